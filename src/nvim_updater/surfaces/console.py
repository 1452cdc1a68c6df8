"""Console surface -- echoes command output to a text stream."""

from __future__ import annotations

import sys
from typing import IO

from nvim_updater.surfaces.base import Surface


class ConsoleSurface(Surface):
	"""Prefixes each output line with the surface title."""

	def __init__(self, title: str = "", stream: IO[str] | None = None) -> None:
		super().__init__(title)
		self._stream = stream if stream is not None else sys.stdout

	def write(self, line: str) -> None:
		prefix = f"[{self.title}] " if self.title else ""
		self._stream.write(f"{prefix}{line}\n")
		self._stream.flush()

	def finish(self, exit_code: int) -> None:
		if exit_code != 0:
			self.write(f"Command failed with exit code: {exit_code}")
