"""TOML configuration loader for nvim-updater."""

from __future__ import annotations

import os
import re
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from nvim_updater.constants import DEFAULT_CONFIG_PATH, DEFAULT_REPO, DEFAULT_SOURCE_DIR, DEFAULT_TAG
from nvim_updater.models import BuildVariant, PipelineRequest


@dataclass
class SourceConfig:
	"""Where the source tree lives and what to check out."""

	path: str = DEFAULT_SOURCE_DIR
	repo: str = DEFAULT_REPO
	tag: str = DEFAULT_TAG  # tag or branch to track

	@property
	def resolved_path(self) -> Path:
		return Path(os.path.expanduser(self.path))


@dataclass
class BuildConfig:
	"""Build tool settings."""

	build_type: str = BuildVariant.RELEASE.value
	build_fresh: bool = True  # run `make distclean` before every build
	make_command: str = "make"
	elevate_command: str = "sudo"
	build_dir: str = "build"


@dataclass
class GitConfig:
	"""Acquisition and update strategy."""

	use_shallow_clone: bool = True
	update_before_switch: bool = True
	force_update: bool = False
	probe_timeout: int = 30  # seconds, read-only queries only


@dataclass
class TelegramConfig:
	"""Telegram reports of finished runs."""

	bot_token: str = ""
	chat_id: str = ""


@dataclass
class NotificationConfig:
	"""Notification verbosity and forwarding."""

	verbose: bool = False
	telegram: TelegramConfig = field(default_factory=TelegramConfig)


@dataclass
class UpdaterConfig:
	"""Top-level nvim-updater configuration."""

	source: SourceConfig = field(default_factory=SourceConfig)
	build: BuildConfig = field(default_factory=BuildConfig)
	git: GitConfig = field(default_factory=GitConfig)
	notifications: NotificationConfig = field(default_factory=NotificationConfig)
	env: dict[str, str] = field(default_factory=dict)


def _build_source(data: dict[str, Any]) -> SourceConfig:
	sc = SourceConfig()
	for key in ("path", "repo", "tag"):
		if key in data:
			setattr(sc, key, str(data[key]))
	return sc


def _build_build(data: dict[str, Any]) -> BuildConfig:
	bc = BuildConfig()
	if "build_type" in data:
		bc.build_type = BuildVariant.parse(str(data["build_type"])).value
	if "build_fresh" in data:
		bc.build_fresh = bool(data["build_fresh"])
	for key in ("make_command", "elevate_command", "build_dir"):
		if key in data:
			setattr(bc, key, str(data[key]))
	return bc


def _build_git(data: dict[str, Any]) -> GitConfig:
	gc = GitConfig()
	for key in ("use_shallow_clone", "update_before_switch", "force_update"):
		if key in data:
			setattr(gc, key, bool(data[key]))
	if "probe_timeout" in data:
		gc.probe_timeout = int(data["probe_timeout"])
	return gc


def _build_notifications(data: dict[str, Any]) -> NotificationConfig:
	nc = NotificationConfig()
	if "verbose" in data:
		nc.verbose = bool(data["verbose"])
	if "telegram" in data:
		tg = data["telegram"]
		nc.telegram = TelegramConfig(
			bot_token=str(tg.get("bot_token", "")),
			chat_id=str(tg.get("chat_id", "")),
		)
	return nc


def _build_env(data: dict[str, Any]) -> dict[str, str]:
	return {str(k): str(v) for k, v in data.items()}


def load_config(path: str | Path | None = None) -> UpdaterConfig:
	"""Load an nvim-updater TOML config file.

	Args:
		path: Path to the TOML config file. None means the default
			location, which is allowed to be missing.

	Returns:
		Parsed UpdaterConfig.

	Raises:
		FileNotFoundError: If an explicitly given config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
		ValueError: If build.build_type is not a known variant.
	"""
	if path is None:
		config_path = Path(os.path.expanduser(DEFAULT_CONFIG_PATH))
		if not config_path.exists():
			return _apply_env_fallbacks(UpdaterConfig())
	else:
		config_path = Path(os.path.expanduser(str(path)))
		if not config_path.exists():
			raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	uc = UpdaterConfig()
	if "source" in data:
		uc.source = _build_source(data["source"])
	if "build" in data:
		uc.build = _build_build(data["build"])
	if "git" in data:
		uc.git = _build_git(data["git"])
	if "notifications" in data:
		uc.notifications = _build_notifications(data["notifications"])
	if "env" in data:
		uc.env = _build_env(data["env"])
	return _apply_env_fallbacks(uc)


def _apply_env_fallbacks(uc: UpdaterConfig) -> UpdaterConfig:
	# Allow env vars as fallback for Telegram credentials
	tg = uc.notifications.telegram
	if not tg.bot_token:
		tg.bot_token = os.environ.get("TELEGRAM_BOT_TOKEN", "")
	if not tg.chat_id:
		tg.chat_id = os.environ.get("TELEGRAM_CHAT_ID", "")
	return uc


def command_env(extra: dict[str, str] | None = None) -> dict[str, str]:
	"""Environment for spawned commands: the current one plus configured extras."""
	env = dict(os.environ)
	if extra:
		env.update(extra)
	return env


def request_from_config(
	config: UpdaterConfig,
	*,
	source_dir: str = "",
	tag: str = "",
	build_type: str = "",
	force_update: bool = False,
) -> PipelineRequest:
	"""Build a PipelineRequest; empty overrides fall back to config values."""
	source = Path(os.path.expanduser(source_dir)) if source_dir else config.source.resolved_path
	return PipelineRequest(
		source_dir=source,
		repo=config.source.repo,
		target=tag or config.source.tag,
		variant=BuildVariant.parse(build_type or config.build.build_type),
		force_update=force_update or config.git.force_update,
		use_shallow_clone=config.git.use_shallow_clone,
		update_before_switch=config.git.update_before_switch,
		build_fresh=config.build.build_fresh,
		make_command=config.build.make_command,
		elevate_command=config.build.elevate_command,
		build_dir=config.build.build_dir,
		env=dict(config.env),
	)


_TELEGRAM_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")


def _is_writable(path: Path) -> bool:
	return os.access(path, os.W_OK)


def validate_config(config: UpdaterConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded UpdaterConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	# 1. build type is a known variant
	try:
		BuildVariant.parse(config.build.build_type)
	except ValueError as exc:
		issues.append(("error", str(exc)))

	# 2. source dir (or its parent) is writable
	source = config.source.resolved_path
	if source.exists():
		if not source.is_dir():
			issues.append(("error", f"source.path is not a directory: {source}"))
		elif not _is_writable(source):
			issues.append(("warning", f"No write access to source directory: {source}"))
		elif not (source / ".git").is_dir():
			issues.append(("warning", f"source.path is not a git repository: {source}"))
	else:
		parent = source.parent
		while not parent.exists() and parent != parent.parent:
			parent = parent.parent
		if not _is_writable(parent):
			issues.append(("error", f"No write access to parent directory: {parent}"))

	# 3. required executables
	for exe in ("git", config.build.make_command, config.build.elevate_command):
		if exe and shutil.which(exe) is None:
			issues.append(("error", f"executable not found on PATH: {exe}"))

	# 4. Telegram bot_token format
	tg = config.notifications.telegram
	if tg.bot_token and not _TELEGRAM_TOKEN_RE.match(tg.bot_token):
		issues.append(("error", "telegram bot_token format invalid (expected digits:alphanumeric)"))
	if tg.bot_token and not tg.chat_id:
		issues.append(("warning", "telegram bot_token set without chat_id; forwarding disabled"))

	# 5. Suspicious values
	if not config.source.tag:
		issues.append(("error", "source.tag must not be empty"))
	if config.git.probe_timeout <= 0:
		issues.append(("warning", f"git.probe_timeout is not positive: {config.git.probe_timeout}"))

	return issues
