"""Read-only queries against a source checkout and its remote.

Every query fails soft: a git error, a missing git binary or a timeout
yields None (unknown) or False rather than an exception.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path

from nvim_updater.constants import PRIMARY_BRANCH_CANDIDATES
from nvim_updater.models import RepositoryState

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class RepositoryProber:
	"""Inspects the repository at source_dir without touching its working copy."""

	def __init__(
		self,
		source_dir: str | Path,
		env: Mapping[str, str] | None = None,
		timeout: float = DEFAULT_TIMEOUT,
		remote: str = "origin",
	) -> None:
		self.source_dir = Path(source_dir)
		self.env = dict(env) if env is not None else None
		self.timeout = timeout
		self.remote = remote

	def exists(self) -> bool:
		return self.source_dir.is_dir()

	def is_git_repo(self) -> bool:
		return (self.source_dir / ".git").is_dir()

	def is_shallow(self) -> bool:
		return (self.source_dir / ".git" / "shallow").is_file()

	async def current_ref(self) -> str | None:
		"""Current branch name, "HEAD" when detached, None if unknown."""
		ok, output = await self._git("rev-parse", "--abbrev-ref", "HEAD")
		ref = output.strip()
		return ref if ok and ref else None

	async def primary_branch(self) -> str | None:
		"""The remote's default branch, falling back to the first local candidate."""
		ok, output = await self._git("symbolic-ref", "--short", f"refs/remotes/{self.remote}/HEAD")
		name = output.strip()
		if ok and name.startswith(f"{self.remote}/"):
			return name[len(self.remote) + 1:]
		for candidate in PRIMARY_BRANCH_CANDIDATES:
			ok, _ = await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{candidate}")
			if ok:
				return candidate
			ok, _ = await self._git(
				"rev-parse", "--verify", "--quiet", f"refs/remotes/{self.remote}/{candidate}",
			)
			if ok:
				return candidate
		return None

	async def local_tag_exists(self, tag: str) -> bool:
		ok, output = await self._git("tag", "--list", tag)
		return ok and tag in output.splitlines()

	async def remote_branch_exists(self, branch: str) -> bool:
		ok, output = await self._git("branch", "-r", "--list", f"{self.remote}/{branch}")
		return ok and any(line.strip() == f"{self.remote}/{branch}" for line in output.splitlines())

	async def remote_tag_exists(self, tag: str, remote: str | None = None) -> bool | None:
		"""Ask the remote (a name or a URL) whether refs/tags/<tag> exists.

		Returns None when the remote could not be reached.
		"""
		ok, output = await self._git(
			"ls-remote", "--tags", remote or self.remote, f"refs/tags/{tag}",
			require_repo=remote is None,
		)
		if not ok:
			return None
		suffix = f"refs/tags/{tag}"
		return any(line.rstrip().endswith(suffix) for line in output.splitlines())

	async def upstream_ref(self, ref: str) -> str:
		"""The ref to compare HEAD against: the remote branch if there is one."""
		if await self.remote_branch_exists(ref):
			return f"{self.remote}/{ref}"
		return ref

	async def commits_ahead(self, ref: str) -> int | None:
		"""Count commits reachable from ref but not from HEAD.

		Fetches from the remote first (remote-tracking refs and tags only).
		"""
		if not self.is_git_repo():
			return None
		ok, output = await self._git("fetch", "--quiet", "--tags", self.remote)
		if not ok:
			logger.warning("Fetch before counting commits failed: %s", output.strip()[:200])
		upstream = await self.upstream_ref(ref)
		ok, output = await self._git("rev-list", "--count", f"HEAD..{upstream}")
		if not ok:
			return None
		try:
			return int(output.strip())
		except ValueError:
			return None

	async def snapshot(self, ref: str, with_remote: bool = False) -> RepositoryState:
		if not self.exists():
			return RepositoryState()
		state = RepositoryState(
			exists=True,
			is_shallow=self.is_shallow(),
			current_ref=await self.current_ref(),
		)
		if with_remote:
			state.remote_ahead_count = await self.commits_ahead(ref)
		return state

	async def _git(self, *args: str, require_repo: bool = True) -> tuple[bool, str]:
		"""Run a git command in source_dir. Never raises."""
		if self.source_dir.is_dir():
			cwd: str | None = str(self.source_dir)
		elif require_repo:
			return (False, "")
		else:
			cwd = None
		try:
			proc = await asyncio.create_subprocess_exec(
				"git", *args,
				cwd=cwd,
				env=self.env,
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
			)
		except OSError as exc:
			logger.debug("git %s could not start: %s", " ".join(args), exc)
			return (False, "")
		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
		except asyncio.TimeoutError:
			try:
				proc.kill()
				await proc.wait()
			except ProcessLookupError:
				pass
			logger.warning("git %s timed out after %ss", " ".join(args), self.timeout)
			return (False, "")
		output = stdout.decode(errors="replace") if stdout else ""
		return (proc.returncode == 0, output)
