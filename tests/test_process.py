"""Tests for the managed process host (real subprocesses)."""

from __future__ import annotations

import asyncio
import io
import shlex
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from nvim_updater.process import ProcessHost, ProcessResult, SpawnError, SpawnOptions
from nvim_updater.surfaces import ConsoleSurface, NullSurface, Surface

PY = sys.executable


class RecordingSurface(Surface):
	def __init__(self, title: str = "") -> None:
		super().__init__(title)
		self.lines: list[str] = []
		self.finished: list[int] = []

	def write(self, line: str) -> None:
		self.lines.append(line)

	def finish(self, exit_code: int) -> None:
		self.finished.append(exit_code)


@pytest.fixture()
def surfaces() -> list[RecordingSurface]:
	return []


@pytest.fixture()
def host(surfaces: list[RecordingSurface]) -> ProcessHost:
	def factory(title: str, options: SpawnOptions) -> Surface:
		surface = RecordingSurface(title)
		surfaces.append(surface)
		return surface

	return ProcessHost(surface_factory=factory, headless=False)


class TestSpawn:
	@pytest.mark.asyncio
	async def test_exit_code_and_output(self, host: ProcessHost, surfaces: list[RecordingSurface]) -> None:
		result = await host.run([PY, "-c", "print('one'); print('two'); raise SystemExit(3)"])

		assert result.exit_code == 3
		assert result.output == "one\ntwo"
		assert surfaces[0].lines == ["one", "two"]
		assert surfaces[0].finished == [3]
		# non-zero exit keeps the surface open for the user to read
		assert not surfaces[0].closed

	@pytest.mark.asyncio
	async def test_stderr_is_interleaved(self, host: ProcessHost) -> None:
		result = await host.run([PY, "-c", "import sys; sys.stderr.write('oops\\n')"])
		assert result.success
		assert result.output == "oops"

	@pytest.mark.asyncio
	async def test_shell_string(self, host: ProcessHost, tmp_path: Path) -> None:
		result = await host.run("echo a && echo b", options=SpawnOptions(cwd=str(tmp_path)))
		assert result.output == "a\nb"

	@pytest.mark.asyncio
	async def test_env_and_cwd(self, host: ProcessHost, tmp_path: Path) -> None:
		result = await host.run(
			[PY, "-c", "import os; print(os.environ['NVU_X'], os.getcwd())"],
			env={"NVU_X": "hello"},
			options=SpawnOptions(cwd=str(tmp_path)),
		)
		assert result.output == f"hello {tmp_path.resolve()}"

	@pytest.mark.asyncio
	async def test_autoclose_on_success(self, host: ProcessHost, surfaces: list[RecordingSurface]) -> None:
		await host.run([PY, "-c", "pass"])
		assert surfaces[0].closed
		assert host.active_count == 0

	@pytest.mark.asyncio
	async def test_autoclose_disabled(self, host: ProcessHost, surfaces: list[RecordingSurface]) -> None:
		await host.run([PY, "-c", "pass"], options=SpawnOptions(autoclose=False))
		assert not surfaces[0].closed
		assert host.active_count == 1

	@pytest.mark.asyncio
	async def test_title_defaults_to_command(self, host: ProcessHost, surfaces: list[RecordingSurface]) -> None:
		await host.run([PY, "-c", "pass"], options=SpawnOptions(title="building"))
		await host.run(["true"])
		assert surfaces[0].title == "building"
		assert surfaces[1].title == "true"

	@pytest.mark.asyncio
	async def test_missing_executable_raises_without_callback(self, host: ProcessHost) -> None:
		calls: list[ProcessResult] = []
		with pytest.raises(SpawnError) as exc_info:
			await host.spawn(["/nonexistent/definitely-not-here"], on_complete=calls.append)
		assert "definitely-not-here" in exc_info.value.command
		assert calls == []
		assert host.active_count == 0


class TestAbort:
	@pytest.mark.asyncio
	async def test_close_while_running_reports_aborted_once(
		self, host: ProcessHost, surfaces: list[RecordingSurface],
	) -> None:
		calls: list[ProcessResult] = []
		handle = await host.spawn(
			[PY, "-c", "import time; print('start', flush=True); time.sleep(30)"],
			on_complete=calls.append,
		)
		while not handle.output_lines:
			await asyncio.sleep(0.01)

		handle.close()
		handle.close()
		result = await asyncio.wait_for(handle.wait(), timeout=5)
		await asyncio.wait_for(handle._reader, timeout=5)

		assert result.aborted
		assert result.exit_code == -1
		assert len(calls) == 1
		assert calls[0].exit_code == -1
		assert surfaces[0].finished == []
		assert not handle.running

	@pytest.mark.asyncio
	async def test_close_after_exit_keeps_real_code(self, host: ProcessHost) -> None:
		calls: list[ProcessResult] = []
		handle = await host.spawn([PY, "-c", "raise SystemExit(2)"], on_complete=calls.append)
		result = await handle.wait()
		handle.close()

		assert result.exit_code == 2
		assert [c.exit_code for c in calls] == [2]

	@pytest.mark.asyncio
	async def test_close_all(self, host: ProcessHost) -> None:
		handles = [
			await host.spawn([PY, "-c", "import time; time.sleep(30)"]) for _ in range(2)
		]
		host.close_all()
		results = await asyncio.gather(*(h.wait() for h in handles))
		assert all(r.aborted for r in results)
		assert host.active_count == 0

	@pytest.mark.asyncio
	async def test_callback_error_is_logged(self, host: ProcessHost, caplog: pytest.LogCaptureFixture) -> None:
		def boom(result: ProcessResult) -> None:
			raise RuntimeError("callback failed")

		handle = await host.spawn([PY, "-c", "pass"], on_complete=boom)
		result = await handle.wait()
		assert result.success
		assert "Completion callback failed" in caplog.text


class TestHeadless:
	def test_env_var_enables_headless(self, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("NVIMUPDATER_HEADLESS", "1")
		assert ProcessHost().headless

	@pytest.mark.asyncio
	async def test_wait_idle_after_all_surfaces_close(self) -> None:
		host = ProcessHost(headless=True)
		await host.run([PY, "-c", "pass"], options=SpawnOptions(autoclose=False))
		idle = asyncio.create_task(host.wait_idle())
		await asyncio.sleep(0.05)
		assert not idle.done()

		host.close_all()
		await asyncio.wait_for(idle, timeout=1)

	@pytest.mark.asyncio
	async def test_idle_when_nothing_spawned(self) -> None:
		await asyncio.wait_for(ProcessHost(headless=True).wait_idle(), timeout=1)


class TestSurfaces:
	def test_console_surface_prefixes_title(self) -> None:
		stream = io.StringIO()
		surface = ConsoleSurface("building", stream=stream)
		surface.write("compiling")
		surface.finish(0)
		surface.finish(2)
		assert stream.getvalue() == "[building] compiling\n[building] Command failed with exit code: 2\n"

	def test_close_listeners_fire_once(self) -> None:
		surface = NullSurface("x")
		fired: list[int] = []
		surface.on_close(lambda: fired.append(1))
		surface.close()
		surface.close()
		assert fired == [1]
		assert surface.closed


class TestOutputFraming:
	@pytest.mark.asyncio
	async def test_line_longer_than_stream_limit(self, host: ProcessHost) -> None:
		handle = await host.spawn([PY, "-c", "print('x' * 200000); print('after')"])
		result = await asyncio.wait_for(handle.wait(), timeout=10)

		assert result.success
		assert result.output == "x" * 200000 + "\nafter"

	@pytest.mark.asyncio
	async def test_carriage_return_progress(self, host: ProcessHost, surfaces: list[RecordingSurface]) -> None:
		script = "import sys; sys.stdout.write('10%\\r50%\\r100%\\r\\ndone\\r\\nno newline')"
		result = await asyncio.wait_for(host.run([PY, "-c", script]), timeout=10)

		assert surfaces[0].lines == ["10%", "50%", "100%", "done", "no newline"]
		assert result.output == "10%\n50%\n100%\ndone\nno newline"

	@pytest.mark.asyncio
	async def test_read_failure_still_completes(self, host: ProcessHost, caplog: pytest.LogCaptureFixture) -> None:
		calls: list[ProcessResult] = []
		broken = AsyncMock(side_effect=ValueError("stream broke"))
		with patch.object(ProcessHost, "_read_lines", broken):
			handle = await host.spawn([PY, "-c", "import time; time.sleep(30)"], on_complete=calls.append)
			result = await asyncio.wait_for(handle.wait(), timeout=5)

		assert result.aborted
		assert len(calls) == 1
		assert "Lost the output stream" in caplog.text


class TestAbortProcessGroup:
	@pytest.mark.asyncio
	@pytest.mark.parametrize("interactive", [True, False])
	async def test_shell_children_die_with_abort(
		self, host: ProcessHost, tmp_path: Path, interactive: bool,
	) -> None:
		marker = tmp_path / "marker"
		child = f"import time; time.sleep(1); open({str(marker)!r}, 'w').close()"
		command = f"echo start && {shlex.quote(PY)} -c {shlex.quote(child)} && echo end"
		handle = await host.spawn(command, options=SpawnOptions(interactive=interactive))
		while not handle.output_lines:
			await asyncio.sleep(0.01)

		handle.close()
		result = await asyncio.wait_for(handle.wait(), timeout=5)
		await asyncio.sleep(1.5)

		assert result.aborted
		assert not marker.exists()
