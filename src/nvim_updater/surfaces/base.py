"""Abstract base class for process output surfaces."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

logger = logging.getLogger(__name__)


class Surface(ABC):
	"""Where a running command's output is shown.

	A surface can be closed by the user at any time. Close listeners are
	notified exactly once; the process host uses this to abort a command
	that is still running.
	"""

	def __init__(self, title: str = "") -> None:
		self.title = title
		self.closed = False
		self._close_listeners: list[Callable[[], None]] = []

	@abstractmethod
	def write(self, line: str) -> None:
		"""Show one line of command output."""

	def finish(self, exit_code: int) -> None:
		"""Called once the command has exited, before any autoclose."""

	def on_close(self, listener: Callable[[], None]) -> None:
		self._close_listeners.append(listener)

	def close(self) -> None:
		if self.closed:
			return
		self.closed = True
		listeners, self._close_listeners = self._close_listeners, []
		for listener in listeners:
			listener()


class NullSurface(Surface):
	"""Discards output. Used for headless runs and tests."""

	def write(self, line: str) -> None:
		logger.debug("[%s] %s", self.title, line)
