"""CLI interface for nvim-updater."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

from nvim_updater.config import (
	UpdaterConfig,
	load_config,
	request_from_config,
	validate_config,
)
from nvim_updater.constants import (
	DEFAULT_CONFIG_PATH,
	DEFAULT_REPO,
	DEFAULT_SOURCE_DIR,
	DEFAULT_TAG,
	HEADLESS_ENV_VAR,
)
from nvim_updater.context import UpdaterContext
from nvim_updater.gate import Decision, Responder, fixed_responder
from nvim_updater.models import PipelineRequest
from nvim_updater.pipeline import Orchestrator, PipelineBusyError
from nvim_updater.process import SpawnOptions
from nvim_updater.surfaces import ConsoleSurface, Surface

T = TypeVar("T")

INIT_TEMPLATE = """\
[source]
path = "{source}"
repo = "{repo}"
tag = "{tag}"

[build]
build_type = "Release"
build_fresh = true
make_command = "make"
elevate_command = "sudo"

[git]
use_shallow_clone = true
update_before_switch = true
force_update = false

[notifications]
verbose = false

# [notifications.telegram]
# bot_token = ""
# chat_id = ""

[env]
"""


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="nvim-updater",
		description="Build and install Neovim from source",
	)
	parser.add_argument("--config", default=None, help=f"Config file path (default: {DEFAULT_CONFIG_PATH})")
	parser.add_argument("--verbose", "-v", action="store_true", help="Show informational notices and debug logs")
	parser.add_argument("--yes", "-y", action="store_true", help="Answer yes to every confirmation prompt")
	sub = parser.add_subparsers(dest="command")

	# nvim-updater update
	update = sub.add_parser("update", help="Acquire, sync, switch and build the source tree")
	update.add_argument("--tag", default="", help="Branch, tag or commit to build")
	update.add_argument("--build-type", default="", help="Release, Debug or RelWithDebInfo")
	update.add_argument("--source-dir", default="", help="Source checkout location")
	update.add_argument("--force", action="store_true", help="Sync even if update_before_switch is off")

	# nvim-updater clone
	clone = sub.add_parser("clone", help="Clone the source tree without building")
	clone.add_argument("--source-dir", default="", help="Source checkout location")
	clone.add_argument("--tag", default="", help="Branch, tag or commit to check out")

	# nvim-updater remove
	remove = sub.add_parser("remove", help="Remove the source tree")
	remove.add_argument("--source-dir", default="", help="Source checkout location")

	# nvim-updater changes
	changes = sub.add_parser("changes", help="Show new upstream commits and offer to update")
	changes.add_argument("--tag", default="", help="Branch or tag to compare against")

	# nvim-updater status
	sub.add_parser("status", help="Show the update status line")

	# nvim-updater init
	init_cmd = sub.add_parser("init", help="Write a default config file")
	init_cmd.add_argument("path", nargs="?", default=DEFAULT_CONFIG_PATH)

	# nvim-updater validate-config
	sub.add_parser("validate-config", help="Validate config file semantically")

	return parser


def _console_surface(title: str, options: SpawnOptions) -> Surface:
	return ConsoleSurface(title)


def _responder(args: argparse.Namespace, headless: bool) -> Responder | None:
	if args.yes:
		return fixed_responder(Decision.ACCEPT)
	if headless:
		return fixed_responder(Decision.DECLINE)
	return None


def _make_context(args: argparse.Namespace, config: UpdaterConfig) -> UpdaterContext:
	headless = bool(os.environ.get(HEADLESS_ENV_VAR))
	if args.verbose:
		config.notifications.verbose = True
	return UpdaterContext.from_config(
		config,
		surface_factory=_console_surface,
		responder=_responder(args, headless),
		headless=headless,
	)


def _run(args: argparse.Namespace, config: UpdaterConfig, work: Callable[[Orchestrator], Awaitable[T]]) -> T:
	"""Run work on a fresh orchestrator inside one event loop.

	SIGINT closes every surface, which aborts whatever command is running.
	"""

	async def _main() -> T:
		ctx = _make_context(args, config)
		loop = asyncio.get_running_loop()
		loop.add_signal_handler(signal.SIGINT, ctx.host.close_all)
		try:
			return await work(Orchestrator(ctx))
		finally:
			loop.remove_signal_handler(signal.SIGINT)
			await ctx.close()
			if ctx.host.headless:
				await ctx.host.wait_idle()

	return asyncio.run(_main())


def _request(args: argparse.Namespace, config: UpdaterConfig, **overrides: Any) -> PipelineRequest:
	return request_from_config(
		config,
		source_dir=getattr(args, "source_dir", ""),
		tag=getattr(args, "tag", ""),
		**overrides,
	)


def cmd_update(args: argparse.Namespace) -> int:
	"""Run the full update pipeline."""
	config = load_config(args.config)
	request = _request(args, config, build_type=args.build_type, force_update=args.force)
	outcome = _run(args, config, lambda orch: orch.update(request))
	print(f"Update {outcome.describe()}")
	return 0 if outcome.ok else 1


def cmd_clone(args: argparse.Namespace) -> int:
	"""Clone the source tree without building."""
	config = load_config(args.config)
	request = _request(args, config)

	async def _clone(orch: Orchestrator) -> bool:
		await orch.acquire(request)
		return orch.last_outcome is not None and orch.last_outcome.ok

	return 0 if _run(args, config, _clone) else 1


def cmd_remove(args: argparse.Namespace) -> int:
	"""Remove the source tree after confirmation."""
	config = load_config(args.config)
	request = _request(args, config)

	async def _remove(orch: Orchestrator) -> bool:
		removed = False

		async def _do() -> None:
			nonlocal removed
			removed = await orch.remove(request)

		await orch.gate.ask(f"Remove {request.source_dir}?", _do)
		return removed

	return 0 if _run(args, config, _remove) else 1


def cmd_changes(args: argparse.Namespace) -> int:
	"""Show pending upstream commits and offer to update."""
	config = load_config(args.config)
	request = _request(args, config)

	async def _changes(orch: Orchestrator) -> bool:
		count = await orch.inspect_pending(request)
		# an accepted update decides the exit code
		accepted = orch.last_outcome
		return count is not None and (accepted is None or accepted.ok)

	return 0 if _run(args, config, _changes) else 1


def cmd_status(args: argparse.Namespace) -> int:
	"""Query the source tree and print the status line."""
	config = load_config(args.config)
	request = _request(args, config)

	line = _run(args, config, lambda orch: orch.refresh_status(request))
	print(line.icon_text)
	return 0


def cmd_init(args: argparse.Namespace) -> int:
	"""Write a default config file."""
	config_path = Path(args.path).expanduser()
	if config_path.exists():
		print(f"Config already exists: {config_path}")
		return 1
	config_path.parent.mkdir(parents=True, exist_ok=True)
	config_path.write_text(INIT_TEMPLATE.format(
		source=DEFAULT_SOURCE_DIR,
		repo=DEFAULT_REPO,
		tag=DEFAULT_TAG,
	))
	print(f"Created {config_path}")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = load_config(args.config)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"update": cmd_update,
	"clone": cmd_clone,
	"remove": cmd_remove,
	"changes": cmd_changes,
	"status": cmd_status,
	"init": cmd_init,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)

	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except (FileNotFoundError, ValueError, PipelineBusyError) as e:
		print(f"Error: {e}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
