"""Managed process host -- spawn external commands and report completion once.

Each spawned command gets a surface (see nvim_updater.surfaces) that shows
its combined stdout/stderr as it arrives. Completion is delivered exactly
once, either as the real exit code or as ABORTED (-1) when the surface is
closed while the command is still running.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import signal
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from nvim_updater.constants import ABORTED, HEADLESS_ENV_VAR
from nvim_updater.surfaces import NullSurface, Surface

logger = logging.getLogger(__name__)


_MB = 1024 * 1024
_OUTPUT_WARNING_THRESHOLDS_MB = (10, 25, 50)
_READ_CHUNK = 65536
_LINE_BREAK = re.compile(rb"\r\n|\r|\n")


class SpawnError(RuntimeError):
	"""Raised when a command could not be started at all."""

	def __init__(self, message: str, *, command: str = "") -> None:
		super().__init__(message)
		self.command = command


@dataclass
class SpawnOptions:
	title: str = ""
	autoclose: bool = True  # close the surface on a zero exit
	interactive: bool = False  # inherit stdin and the controlling terminal (sudo prompts)
	cwd: str | None = None


@dataclass
class ProcessResult:
	exit_code: int
	output: str = ""

	@property
	def success(self) -> bool:
		return self.exit_code == 0

	@property
	def aborted(self) -> bool:
		return self.exit_code == ABORTED


CompletionCallback = Callable[[ProcessResult], None]
SurfaceFactory = Callable[[str, SpawnOptions], Surface]


class ProcessHandle:
	"""One spawned command. Output is append-only; completion fires once."""

	def __init__(
		self,
		command: str,
		surface: Surface,
		on_complete: CompletionCallback | None = None,
	) -> None:
		self.command = command
		self.surface = surface
		self.pid: int | None = None
		self._on_complete = on_complete
		self._lines: list[str] = []
		self._output_bytes = 0
		self._warnings_fired: set[int] = set()
		self._result: ProcessResult | None = None
		self._done: asyncio.Future[ProcessResult] = asyncio.get_running_loop().create_future()
		self._process: asyncio.subprocess.Process | None = None
		self._pgid: int | None = None
		self._tty_owner: int | None = None
		self._reader: asyncio.Task[None] | None = None

	@property
	def running(self) -> bool:
		return self._result is None

	@property
	def exit_code(self) -> int | None:
		return None if self._result is None else self._result.exit_code

	@property
	def output_lines(self) -> tuple[str, ...]:
		return tuple(self._lines)

	async def wait(self) -> ProcessResult:
		return await asyncio.shield(self._done)

	def close(self) -> None:
		"""Close the surface, aborting the command if it is still running."""
		self.surface.close()

	def _append(self, line: str) -> None:
		if self._result is not None:
			return
		self._lines.append(line)
		self._output_bytes += len(line) + 1
		self._check_output_thresholds()
		self.surface.write(line)

	def _check_output_thresholds(self) -> None:
		"""Log warnings when output size crosses configured thresholds."""
		for threshold_mb in _OUTPUT_WARNING_THRESHOLDS_MB:
			if self._output_bytes >= threshold_mb * _MB and threshold_mb not in self._warnings_fired:
				self._warnings_fired.add(threshold_mb)
				logger.warning(
					"Command %r output reached %dMB (%d bytes)",
					self.command, threshold_mb, self._output_bytes,
				)

	def _abort(self) -> None:
		if self._result is not None:
			return
		logger.info("Surface closed before %r finished; aborting", self.command)
		proc = self._process
		try:
			# the group outlives the shell when it is killed first
			if self._pgid is not None:
				os.killpg(self._pgid, signal.SIGKILL)
			elif proc is not None and proc.returncode is None:
				proc.kill()
		except ProcessLookupError:
			pass
		self._complete(ABORTED)

	def _complete(self, exit_code: int) -> None:
		if self._result is not None:
			return
		result = ProcessResult(exit_code=exit_code, output="\n".join(self._lines))
		self._result = result
		if self._tty_owner is not None:
			_hand_terminal_back(self._tty_owner)
			self._tty_owner = None
		self._done.set_result(result)
		if self._on_complete is not None:
			try:
				self._on_complete(result)
			except Exception:
				logger.exception("Completion callback failed for %r", self.command)
		self._lines = []


def _default_surface(title: str, options: SpawnOptions) -> Surface:
	return NullSurface(title)


def _hand_terminal_to(pgid: int) -> int | None:
	"""Make pgid the terminal's foreground group.

	Returns the previous foreground group, or None when stdin is not a
	terminal (pipes, CI, tests).
	"""
	try:
		fd = sys.stdin.fileno()
		if not os.isatty(fd):
			return None
		previous = os.tcgetpgrp(fd)
		os.tcsetpgrp(fd, pgid)
	except (OSError, ValueError):
		return None
	try:
		# anything that touched the terminal before the handover was stopped
		os.killpg(pgid, signal.SIGCONT)
	except ProcessLookupError:
		pass
	return previous


def _hand_terminal_back(pgid: int) -> None:
	# we are a background group now; SIGTTOU would stop us
	signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGTTOU})
	try:
		os.tcsetpgrp(sys.stdin.fileno(), pgid)
	except (OSError, ValueError) as exc:
		logger.debug("Could not take the terminal back: %s", exc)
	finally:
		signal.pthread_sigmask(signal.SIG_UNBLOCK, {signal.SIGTTOU})


class ProcessHost:
	"""Spawns commands and tracks their surfaces.

	When running headless (NVIMUPDATER_HEADLESS set), wait_idle() is the
	signal that every surface has closed and the program may exit.
	"""

	def __init__(
		self,
		surface_factory: SurfaceFactory | None = None,
		headless: bool | None = None,
	) -> None:
		self._surface_factory = surface_factory or _default_surface
		if headless is None:
			headless = bool(os.environ.get(HEADLESS_ENV_VAR))
		self.headless = headless
		self._open: set[ProcessHandle] = set()
		self._idle = asyncio.Event()
		self._idle.set()

	@property
	def active_count(self) -> int:
		"""Number of handles whose surface is still open."""
		return len(self._open)

	async def spawn(
		self,
		command: str | Sequence[str],
		env: Mapping[str, str] | None = None,
		options: SpawnOptions | None = None,
		on_complete: CompletionCallback | None = None,
	) -> ProcessHandle:
		"""Start a command. A string runs through the shell, a list is exec'd.

		Raises:
			SpawnError: If the command (or the shell) cannot be started.
				No completion callback fires in that case.
		"""
		options = options or SpawnOptions()
		display = command if isinstance(command, str) else shlex.join(command)
		kwargs: dict[str, Any] = {
			"cwd": options.cwd,
			"env": dict(env) if env is not None else None,
			"stdout": asyncio.subprocess.PIPE,
			"stderr": asyncio.subprocess.STDOUT,
		}
		if options.interactive:
			# own group in our session, so it keeps the terminal for sudo prompts
			kwargs.update(stdin=None, process_group=0)
		else:
			kwargs.update(stdin=asyncio.subprocess.DEVNULL, start_new_session=True)
		try:
			if isinstance(command, str):
				proc = await asyncio.create_subprocess_shell(command, **kwargs)
			else:
				proc = await asyncio.create_subprocess_exec(*command, **kwargs)
		except OSError as exc:
			raise SpawnError(f"Failed to spawn {display!r}: {exc}", command=display) from exc

		surface = self._surface_factory(options.title or display, options)
		handle = ProcessHandle(display, surface, on_complete)
		handle._process = proc
		handle._pgid = proc.pid
		handle.pid = proc.pid
		if options.interactive:
			handle._tty_owner = _hand_terminal_to(proc.pid)
		surface.on_close(handle._abort)
		surface.on_close(lambda: self._surface_closed(handle))
		self._open.add(handle)
		self._idle.clear()
		logger.debug("Spawned pid=%s: %s", proc.pid, display)
		handle._reader = asyncio.create_task(self._pump(handle, proc, options))
		return handle

	async def run(
		self,
		command: str | Sequence[str],
		env: Mapping[str, str] | None = None,
		options: SpawnOptions | None = None,
	) -> ProcessResult:
		"""Spawn a command and wait for its completion."""
		handle = await self.spawn(command, env=env, options=options)
		return await handle.wait()

	async def _pump(
		self, handle: ProcessHandle, proc: asyncio.subprocess.Process, options: SpawnOptions,
	) -> None:
		exit_code: int | None = None
		try:
			if proc.stdout is not None:
				await self._read_lines(handle, proc.stdout)
			exit_code = await proc.wait()
		except Exception:
			logger.exception("Lost the output stream of %r", handle.command)
		finally:
			if exit_code is None:
				# completion still has to fire once
				handle._abort()
		if exit_code is None or not handle.running:
			return
		if exit_code == -signal.SIGINT:
			# Ctrl-C reaches the foreground command, not our handler
			exit_code = ABORTED
		handle.surface.finish(exit_code)
		handle._complete(exit_code)
		if options.autoclose and exit_code == 0:
			handle.surface.close()

	@staticmethod
	async def _read_lines(handle: ProcessHandle, stream: asyncio.StreamReader) -> None:
		"""Feed output to the handle line by line; \\r counts as a line break (progress bars)."""
		carry = b""
		while True:
			chunk = await stream.read(_READ_CHUNK)
			if not chunk:
				break
			data = carry + chunk
			tail = b""
			if data.endswith(b"\r"):
				# may be the first half of \r\n
				data, tail = data[:-1], b"\r"
			*lines, carry = _LINE_BREAK.split(data)
			carry += tail
			for line in lines:
				handle._append(line.decode(errors="replace"))
		carry = carry.rstrip(b"\r")
		if carry:
			handle._append(carry.decode(errors="replace"))

	def _surface_closed(self, handle: ProcessHandle) -> None:
		self._open.discard(handle)
		if not self._open:
			self._idle.set()
			if self.headless:
				logger.info("All process surfaces closed; headless run may exit")

	def close_all(self) -> None:
		"""Close every open surface, aborting whatever is still running."""
		for handle in list(self._open):
			handle.close()

	async def wait_idle(self) -> None:
		await self._idle.wait()
