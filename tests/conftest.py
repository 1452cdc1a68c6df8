"""Shared pytest fixtures and factory functions for nvim-updater tests."""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from nvim_updater.config import UpdaterConfig
from nvim_updater.context import UpdaterContext
from nvim_updater.gate import ConfirmationGate, Decision, fixed_responder
from nvim_updater.models import PipelineRequest
from nvim_updater.notifier import Notifier
from nvim_updater.process import ProcessResult, SpawnOptions
from nvim_updater.status import StatusCache


class FakeHost:
	"""Records commands instead of running them.

	``script`` maps a substring of the displayed command to the exit code
	(or a list of exit codes, consumed in order) it should return. Commands
	matching nothing exit 0. ``on_call`` hooks run before the result is
	returned and may touch the filesystem to mimic the real command.
	"""

	def __init__(self, script: Mapping[str, int | list[int]] | None = None) -> None:
		self.script: dict[str, int | list[int]] = dict(script or {})
		self.calls: list[str] = []
		self.options: list[SpawnOptions] = []
		self.on_call: list[tuple[str, Callable[[str], None]]] = []
		self.headless = True
		self.closed = 0

	def hook(self, needle: str, fn: Callable[[str], None]) -> None:
		self.on_call.append((needle, fn))

	def _exit_code(self, display: str) -> int:
		for needle, code in self.script.items():
			if needle in display:
				if isinstance(code, list):
					return code.pop(0) if len(code) > 1 else code[0]
				return code
		return 0

	async def run(
		self,
		command: str | Sequence[str],
		env: Mapping[str, str] | None = None,
		options: SpawnOptions | None = None,
	) -> ProcessResult:
		display = command if isinstance(command, str) else " ".join(command)
		self.calls.append(display)
		self.options.append(options or SpawnOptions())
		for needle, fn in self.on_call:
			if needle in display:
				fn(display)
		return ProcessResult(self._exit_code(display))

	def calls_with(self, needle: str) -> list[str]:
		return [c for c in self.calls if needle in c]

	def close_all(self) -> None:
		self.closed += 1

	async def wait_idle(self) -> None:
		return None


class FakeProber:
	"""RepositoryProber stand-in with settable answers."""

	def __init__(self, source_dir: Path, **answers: Any) -> None:
		self.source_dir = source_dir
		self.shallow = answers.get("shallow", False)
		self.ref = answers.get("ref", "master")
		self.primary = answers.get("primary", "master")
		self.local_tags: set[str] = set(answers.get("local_tags", ()))
		self.remote_branches: set[str] = set(answers.get("remote_branches", ()))
		self.remote_tag = answers.get("remote_tag", False)
		self.ahead = answers.get("ahead", 0)

	def exists(self) -> bool:
		return self.source_dir.is_dir()

	def is_git_repo(self) -> bool:
		return self.exists()

	def is_shallow(self) -> bool:
		return self.shallow

	async def current_ref(self) -> str | None:
		return self.ref

	async def primary_branch(self) -> str | None:
		return self.primary

	async def local_tag_exists(self, tag: str) -> bool:
		return tag in self.local_tags

	async def remote_branch_exists(self, branch: str) -> bool:
		return branch in self.remote_branches

	async def remote_tag_exists(self, tag: str, remote: str | None = None) -> bool | None:
		return self.remote_tag

	async def upstream_ref(self, ref: str) -> str:
		return f"origin/{ref}"

	async def commits_ahead(self, ref: str) -> int | None:
		return self.ahead


@pytest.fixture()
def config(tmp_path: Path) -> UpdaterConfig:
	"""UpdaterConfig with the source tree under tmp_path and no Telegram."""
	cfg = UpdaterConfig()
	cfg.source.path = str(tmp_path / "neovim")
	cfg.notifications.telegram.bot_token = ""
	cfg.notifications.telegram.chat_id = ""
	return cfg


def make_request(source_dir: Path, **overrides: Any) -> PipelineRequest:
	"""Create a PipelineRequest with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"source_dir": source_dir,
		"target": "stable",
		"repo": "https://example.invalid/neovim.git",
	}
	defaults.update(overrides)
	return PipelineRequest(**defaults)


def make_context(
	host: FakeHost,
	decision: Decision = Decision.DECLINE,
	verbose: bool = True,
) -> UpdaterContext:
	"""UpdaterContext wired to a fake host and a fixed gate answer."""
	notifier = Notifier(verbose=verbose)
	return UpdaterContext(
		host=host,  # type: ignore[arg-type]
		notifier=notifier,
		gate=ConfirmationGate(notifier, fixed_responder(decision)),
		status=StatusCache(),
	)


def init_repo(path: Path, branch: str = "master") -> Path:
	"""Create a git repo with one commit at path."""
	path.mkdir(parents=True, exist_ok=True)
	git(path, "init", "-q", "-b", branch)
	git(path, "config", "user.email", "test@test.com")
	git(path, "config", "user.name", "Test")
	(path / "README").write_text("hello\n")
	git(path, "add", "README")
	git(path, "commit", "-q", "-m", "initial")
	return path


def git(cwd: Path, *args: str) -> str:
	return subprocess.run(
		["git", *args], cwd=cwd, check=True, capture_output=True, text=True,
	).stdout


def commit(path: Path, name: str, content: str = "x\n") -> None:
	(path / name).write_text(content)
	git(path, "add", name)
	git(path, "commit", "-q", "-m", f"add {name}")
