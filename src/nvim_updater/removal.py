"""Two-tier directory removal: direct delete, then elevated delete."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Mapping
from pathlib import Path

from nvim_updater.notifier import Level, Notifier
from nvim_updater.process import ProcessHost, SpawnError, SpawnOptions

logger = logging.getLogger(__name__)


async def remove_directory(
	path: Path,
	host: ProcessHost,
	notifier: Notifier,
	elevate_command: str = "sudo",
	env: Mapping[str, str] | None = None,
) -> bool:
	"""Recursively delete path.

	A failed direct delete (typically a permission error) falls back to
	``<elevate_command> rm -rf`` run through the process host. Success is
	only reported once the directory is confirmed gone.
	"""
	if not path.is_dir():
		notifier.notify(f"Directory does not exist: {path}", Level.WARN)
		return False

	try:
		shutil.rmtree(path)
	except OSError as exc:
		notifier.notify(f"Direct removal of {path} failed: {exc}", Level.DEBUG)
	else:
		notifier.notify(f"Removed directory with a direct delete: {path}", Level.DEBUG)
		return True

	notifier.notify(
		f"Attempting to remove {path} with elevated privileges. Please authorize {elevate_command}.",
		Level.WARN,
	)
	command = [elevate_command, "rm", "-rf", str(path)] if elevate_command else ["rm", "-rf", str(path)]
	try:
		result = await host.run(
			command,
			env=env,
			options=SpawnOptions(title="privileged_rm", interactive=True),
		)
	except SpawnError as exc:
		notifier.notify(f"Failed to remove directory {path}: {exc}", Level.ERROR)
		return False

	if result.aborted:
		notifier.notify(f"Removal of {path} was aborted", Level.WARN)
		return False
	if not result.success:
		notifier.notify(
			f"Failed to remove directory {path} (exit code {result.exit_code})", Level.ERROR,
		)
		return False
	if path.exists():
		notifier.notify(f"Failed to remove directory {path}: still present", Level.ERROR)
		return False
	logger.info("Removed %s with elevated privileges", path)
	return True
