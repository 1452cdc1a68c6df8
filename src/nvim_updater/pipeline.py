"""Update pipeline: Acquire -> Sync -> Switch -> Build.

Each stage handler takes the run context and returns the next stage.
advance() is the single driver; update() loops it until DONE or FAILED.
A stage may mark later stages as satisfied (smart acquire jumps straight
to BUILD), but BUILD refuses to run without a confirmed ref.
"""

from __future__ import annotations

import contextlib
import logging
import shlex
import shutil
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from nvim_updater.config import command_env
from nvim_updater.constants import ABORTED, PRIMARY_BRANCH_CANDIDATES
from nvim_updater.context import UpdaterContext
from nvim_updater.models import OutcomeKind, PipelineOutcome, PipelineRequest, Stage
from nvim_updater.notifier import Level
from nvim_updater.process import ProcessResult, SpawnError, SpawnOptions
from nvim_updater.prober import RepositoryProber
from nvim_updater.removal import remove_directory
from nvim_updater.status import StatusLine, status_line

logger = logging.getLogger(__name__)


class PipelineBusyError(RuntimeError):
	"""Raised when a second run targets a source path that already has one."""


@dataclass
class PipelineContext:
	"""Mutable state of one pipeline run."""

	request: PipelineRequest
	prober: RepositoryProber
	failed_stage: Stage | None = None
	exit_code: int | None = None
	reason: str = ""
	aborted: bool = False
	ref_confirmed: bool = False
	retry_pending: bool = False
	build_attempts: int = 0
	visited: list[Stage] = field(default_factory=list)
	skipped: set[Stage] = field(default_factory=set)
	warnings: list[str] = field(default_factory=list)

	def outcome(self, stage: Stage) -> PipelineOutcome:
		if stage is Stage.DONE:
			return PipelineOutcome.success()
		if self.aborted and self.failed_stage is not None:
			return PipelineOutcome.aborted(self.failed_stage)
		return PipelineOutcome.failed(self.failed_stage, self.exit_code, self.reason)


def build_command(request: PipelineRequest) -> str:
	"""Chained shell command for clean (optional), build and install."""
	make = shlex.split(request.make_command) or ["make"]
	steps: list[list[str]] = []
	if request.build_fresh:
		steps.append([*make, "distclean"])
	steps.append([*make, f"CMAKE_BUILD_TYPE={request.variant.value}"])
	install = [*make, "install"]
	if request.elevate_command:
		install = [*shlex.split(request.elevate_command), *install]
	steps.append(install)
	return " && ".join(shlex.join(step) for step in steps)


ProberFactory = Callable[[PipelineRequest], RepositoryProber]
StageHandler = Callable[[PipelineContext], Awaitable[Stage]]


class Orchestrator:
	"""Drives pipeline runs. At most one run per source path at a time."""

	def __init__(self, context: UpdaterContext, prober_factory: ProberFactory | None = None) -> None:
		self.context = context
		self.host = context.host
		self.notifier = context.notifier
		self.gate = context.gate
		self.status = context.status
		self._prober_factory = prober_factory or self._default_prober
		self._active: set[Path] = set()
		self.last_outcome: PipelineOutcome | None = None
		self._handlers: dict[Stage, StageHandler] = {
			Stage.ACQUIRE: self._acquire,
			Stage.SYNC: self._sync,
			Stage.SWITCH: self._switch,
			Stage.BUILD: self._build,
		}

	def _default_prober(self, request: PipelineRequest) -> RepositoryProber:
		return RepositoryProber(
			request.source_dir,
			env=command_env(request.env),
			timeout=self.context.probe_timeout,
		)

	def new_context(self, request: PipelineRequest) -> PipelineContext:
		return PipelineContext(request=request, prober=self._prober_factory(request))

	def status_line(self) -> StatusLine:
		return status_line(self.status)

	@contextlib.contextmanager
	def _claim(self, path: Path) -> Iterator[None]:
		key = path.expanduser().resolve()
		if key in self._active:
			raise PipelineBusyError(f"A run is already active for {path}")
		self._active.add(key)
		try:
			yield
		finally:
			self._active.discard(key)

	# -- entry points -------------------------------------------------------

	async def update(self, request: PipelineRequest) -> PipelineOutcome:
		"""Full pipeline run: acquire if needed, sync, switch, build."""
		with self._claim(request.source_dir):
			self.notifier.notify(
				f"Starting update...\nSource: {request.source_dir}\n"
				f"Target: {request.target}\nBuild: {request.variant.value}",
				Level.INFO,
			)
			ctx = self.new_context(request)
			stage = Stage.ACQUIRE
			while not stage.terminal:
				stage = await self.advance(stage, ctx)
			return await self._finish(
				ctx, stage, "update",
				"Update complete! Restart the editor for the changes to take effect.",
			)

	async def acquire(self, request: PipelineRequest) -> Path:
		"""Clone the source tree and check out the target, without building.

		An existing source path is left untouched.
		"""
		with self._claim(request.source_dir):
			ctx = self.new_context(request)
			if ctx.prober.exists():
				self.notifier.notify(f"Source directory already exists: {request.source_dir}", Level.WARN)
				self.last_outcome = PipelineOutcome.success()
				await self.notifier.report("clone", self.last_outcome, request)
				return request.source_dir
			stage = await self.advance(Stage.ACQUIRE, ctx)
			if stage is Stage.SYNC:
				# full clone: the target still has to be checked out
				stage = await self.advance(Stage.SWITCH, ctx)
			if stage is Stage.BUILD:
				stage = Stage.DONE
			await self._finish(ctx, stage, "clone", f"Source cloned successfully: {request.source_dir}")
			return request.source_dir

	async def remove(self, request: PipelineRequest) -> bool:
		"""Remove the source directory, escalating privileges if needed."""
		with self._claim(request.source_dir):
			removed = await remove_directory(
				request.source_dir,
				self.host,
				self.notifier,
				elevate_command=request.elevate_command,
				env=command_env(request.env),
			)
			if removed:
				self.status.reset()
				self.notifier.notify(
					f"Successfully removed source directory: {request.source_dir}", Level.INFO, force=True,
				)
				self.last_outcome = PipelineOutcome.success()
			else:
				self.last_outcome = PipelineOutcome(OutcomeKind.FAILED, reason="removal failed")
			await self.notifier.report("removal", self.last_outcome, request)
			return removed

	async def refresh_status(self, request: PipelineRequest) -> StatusLine:
		"""Recount the pending commits and return the new status line."""
		prober = self._prober_factory(request)
		count = await prober.commits_ahead(request.target) if prober.exists() else None
		if count is None:
			self.status.reset()
		else:
			self.status.set_count(count)
		return self.status_line()

	async def inspect_pending(self, request: PipelineRequest) -> int | None:
		"""Count and show commits on the target that HEAD does not have yet.

		When there are any, offers to run the update right away.
		"""
		with self._claim(request.source_dir):
			ctx = self.new_context(request)
			if not ctx.prober.exists():
				self.status.reset()
				self.notifier.notify(f"Source directory does not exist: {request.source_dir}", Level.WARN)
				return None
			count = await ctx.prober.commits_ahead(request.target)
			if count is None:
				self.status.reset()
				self.notifier.notify(f"Could not determine pending changes for {request.target}", Level.ERROR)
				return None
			self.status.set_count(count)
			if count == 0:
				self.notifier.notify(f"{request.target}: up to date", Level.INFO, force=True)
				return 0
			upstream = await ctx.prober.upstream_ref(request.target)
			try:
				await self._exec(
					ctx,
					["git", "log", "--oneline", "--no-decorate", f"HEAD..{upstream}"],
					title="new_commits",
					cwd=str(request.source_dir),
					autoclose=False,
				)
			except SpawnError as exc:
				self.notifier.notify(f"Could not show new commits: {exc}", Level.WARN)

		self.last_outcome = None
		noun = "commit" if count == 1 else "commits"
		self.notifier.notify(f"{count} new {noun} on {request.target}", Level.INFO, force=True)
		await self.gate.ask("Perform update?", lambda: self.update(request))
		return count

	# -- driver -------------------------------------------------------------

	async def advance(self, stage: Stage, ctx: PipelineContext) -> Stage:
		"""Run one stage and return the next one. Terminal stages are absorbing."""
		handler = self._handlers.get(stage)
		if handler is None:
			return stage
		ctx.visited.append(stage)
		logger.debug("Entering stage %s", stage.value)
		try:
			return await handler(ctx)
		except (SpawnError, OSError) as exc:
			return self._fail(ctx, stage, None, str(exc))

	async def _finish(
		self, ctx: PipelineContext, stage: Stage, action: str, success_message: str,
	) -> PipelineOutcome:
		outcome = ctx.outcome(stage)
		if outcome.ok:
			self.status.mark_up_to_date()
			self.notifier.notify(success_message, Level.INFO, force=True)
		elif outcome.kind is OutcomeKind.ABORTED:
			self.notifier.notify(f"The {action} was {outcome.describe()}", Level.WARN)
		else:
			self.status.reset()
			self.notifier.notify(f"The {action} {outcome.describe()}", Level.ERROR)
		self.last_outcome = outcome
		await self.notifier.report(action, outcome, ctx.request)
		return outcome

	def _fail(self, ctx: PipelineContext, stage: Stage, exit_code: int | None, reason: str) -> Stage:
		ctx.failed_stage = stage
		ctx.exit_code = exit_code
		ctx.reason = reason
		logger.debug("Stage %s failed (exit %s): %s", stage.value, exit_code, reason)
		return Stage.FAILED

	def _abort(self, ctx: PipelineContext, stage: Stage) -> Stage:
		ctx.aborted = True
		return self._fail(ctx, stage, ABORTED, "closed before completion")

	def _warn(self, ctx: PipelineContext, message: str) -> None:
		ctx.warnings.append(message)
		self.notifier.notify(message, Level.WARN)

	async def _exec(
		self,
		ctx: PipelineContext,
		command: str | Sequence[str],
		title: str,
		cwd: str | None = None,
		interactive: bool = False,
		autoclose: bool = True,
	) -> ProcessResult:
		return await self.host.run(
			command,
			env=command_env(ctx.request.env),
			options=SpawnOptions(title=title, cwd=cwd, interactive=interactive, autoclose=autoclose),
		)

	# -- ACQUIRE ------------------------------------------------------------

	async def _acquire(self, ctx: PipelineContext) -> Stage:
		req = ctx.request
		if ctx.prober.exists():
			self.notifier.notify(f"Source directory exists: {req.source_dir}", Level.DEBUG)
			return Stage.SYNC
		req.source_dir.parent.mkdir(parents=True, exist_ok=True)
		if req.use_shallow_clone:
			return await self._smart_acquire(ctx)

		self.notifier.notify("Cloning repository (full clone)...", Level.INFO)
		result = await self._exec(
			ctx, ["git", "clone", "--progress", req.repo, str(req.source_dir)], title="cloning",
		)
		if result.aborted:
			return self._abort(ctx, Stage.ACQUIRE)
		if not result.success:
			return self._fail(ctx, Stage.ACQUIRE, result.exit_code, "clone failed")
		self.notifier.notify("Repository cloned successfully", Level.INFO)
		return Stage.SYNC

	async def _smart_acquire(self, ctx: PipelineContext) -> Stage:
		"""Branch clone, then shallow clone + tag fetch, then full clone."""
		req = ctx.request
		dest = str(req.source_dir)
		target = req.target
		self.notifier.notify(f"Starting optimized clone for: {target}", Level.INFO)

		result = await self._exec(
			ctx,
			["git", "clone", "--depth", "1", "--single-branch", "--branch", target, req.repo, dest],
			title="smart_cloning",
		)
		if result.aborted:
			return self._abort(ctx, Stage.ACQUIRE)
		if result.success:
			return self._acquired(ctx, f"branch {target}")
		logger.info("Branch clone of %s failed, trying the tag approach", target)
		self._discard_partial(req.source_dir)

		result = await self._exec(
			ctx, ["git", "clone", "--depth", "1", req.repo, dest], title="smart_cloning",
		)
		if result.aborted:
			return self._abort(ctx, Stage.ACQUIRE)
		if result.success:
			stage = await self._fetch_tag(ctx)
			if stage is not None:
				return stage
		self._discard_partial(req.source_dir)

		self.notifier.notify("Shallow clone failed, falling back to full clone...", Level.WARN)
		result = await self._exec(
			ctx, ["git", "clone", "--progress", req.repo, dest], title="cloning",
		)
		if result.aborted:
			return self._abort(ctx, Stage.ACQUIRE)
		if not result.success:
			return self._fail(ctx, Stage.ACQUIRE, result.exit_code, "clone failed")

		result = await self._exec(ctx, ["git", "checkout", target], title="switching", cwd=dest)
		if result.aborted:
			return self._abort(ctx, Stage.ACQUIRE)
		if not result.success:
			self._warn(ctx, f"Could not switch to {target}, staying on default branch")
			return self._acquired(ctx, "default branch")
		return self._acquired(ctx, target)

	async def _fetch_tag(self, ctx: PipelineContext) -> Stage | None:
		"""Fetch and check out the target tag in a fresh shallow clone.

		Returns None when the tag path did not work out.
		"""
		target = ctx.request.target
		dest = str(ctx.request.source_dir)
		found = await ctx.prober.remote_tag_exists(target)
		if not found:
			logger.info("Tag %s not found on remote (answer: %s)", target, found)
			return None
		result = await self._exec(
			ctx, ["git", "fetch", "--depth", "1", "origin", "tag", target], title="smart_cloning", cwd=dest,
		)
		if result.aborted:
			return self._abort(ctx, Stage.ACQUIRE)
		if not result.success:
			return None
		result = await self._exec(ctx, ["git", "checkout", target], title="smart_cloning", cwd=dest)
		if result.aborted:
			return self._abort(ctx, Stage.ACQUIRE)
		if not result.success:
			return None
		return self._acquired(ctx, f"tag {target}")

	def _acquired(self, ctx: PipelineContext, what: str) -> Stage:
		ctx.ref_confirmed = True
		ctx.skipped.update((Stage.SYNC, Stage.SWITCH))
		self.notifier.notify(f"Repository cloned with optimizations ({what})", Level.INFO, force=True)
		return Stage.BUILD

	def _discard_partial(self, path: Path) -> None:
		if path.exists():
			logger.debug("Discarding partial checkout at %s", path)
			shutil.rmtree(path)

	# -- SYNC ---------------------------------------------------------------

	async def _sync(self, ctx: PipelineContext) -> Stage:
		req = ctx.request
		prober = ctx.prober
		if prober.is_shallow() and req.use_shallow_clone:
			# updating a shallow checkout in place can drop history needed later
			self.notifier.notify("Detected shallow clone, skipping update step", Level.INFO)
			ctx.skipped.add(Stage.SYNC)
			return Stage.SWITCH
		if not (req.update_before_switch or req.force_update):
			return Stage.SWITCH
		if not prober.is_git_repo():
			self._warn(ctx, f"Not a git repository: {req.source_dir}. Continuing with current state.")
			return Stage.SWITCH

		self.notifier.notify("Updating source code to latest...", Level.INFO)
		cwd = str(req.source_dir)
		result = await self._exec(ctx, ["git", "fetch", "origin"], title="updating_source", cwd=cwd)
		if result.aborted:
			return self._abort(ctx, Stage.SYNC)
		if not result.success:
			self._warn(ctx, "Fetch failed. Continuing with local refs.")

		ref = await prober.current_ref()
		if ref and ref != "HEAD":
			result = await self._exec(ctx, ["git", "pull", "origin", ref], title="updating_source", cwd=cwd)
			if result.aborted:
				return self._abort(ctx, Stage.SYNC)
			if result.success:
				self.notifier.notify("Successfully updated source code to latest", Level.INFO)
				return Stage.SWITCH
			self._warn(ctx, f"Pull of {ref} failed, trying the primary branch")
		return await self._sync_primary(ctx)

	async def _sync_primary(self, ctx: PipelineContext) -> Stage:
		cwd = str(ctx.request.source_dir)
		primary = await ctx.prober.primary_branch()
		candidates = [primary] if primary else list(PRIMARY_BRANCH_CANDIDATES)
		for branch in candidates:
			result = await self._exec(ctx, ["git", "switch", branch], title="updating_source", cwd=cwd)
			if result.aborted:
				return self._abort(ctx, Stage.SYNC)
			if not result.success:
				continue
			result = await self._exec(ctx, ["git", "pull", "origin", branch], title="updating_source", cwd=cwd)
			if result.aborted:
				return self._abort(ctx, Stage.SYNC)
			if not result.success:
				self._warn(ctx, f"Pull of {branch} failed. Continuing with current state.")
			return Stage.SWITCH
		self._warn(ctx, "Could not switch to the primary branch. Continuing with current state.")
		return Stage.SWITCH

	# -- SWITCH -------------------------------------------------------------

	async def _switch(self, ctx: PipelineContext) -> Stage:
		req = ctx.request
		target = req.target
		if not ctx.prober.exists():
			return self._fail(ctx, Stage.SWITCH, None, f"source directory does not exist: {req.source_dir}")
		self.notifier.notify(f"Switching to target: {target}", Level.INFO)

		if await ctx.prober.local_tag_exists(target):
			kind = "tag"
			command = ["git", "switch", "--detach", target]
		elif await ctx.prober.remote_branch_exists(target):
			kind = "branch"
			command = ["git", "switch", target]
		else:
			kind = "ref"
			command = ["git", "switch", target]
		logger.info("Target %s resolved as %s", target, kind)

		cwd = str(req.source_dir)
		result = await self._exec(ctx, command, title="switching", cwd=cwd)
		if result.aborted:
			return self._abort(ctx, Stage.SWITCH)
		if not result.success:
			result = await self._exec(ctx, ["git", "checkout", target], title="switching", cwd=cwd)
			if result.aborted:
				return self._abort(ctx, Stage.SWITCH)
			if not result.success:
				return self._fail(ctx, Stage.SWITCH, result.exit_code, f"could not switch to {target}")
		ctx.ref_confirmed = True
		self.notifier.notify(f"Successfully switched to {kind}: {target}", Level.INFO)
		return Stage.BUILD

	# -- BUILD --------------------------------------------------------------

	async def _build(self, ctx: PipelineContext) -> Stage:
		req = ctx.request
		if not ctx.ref_confirmed:
			return self._fail(ctx, Stage.BUILD, None, "no confirmed ref to build")
		ctx.build_attempts += 1
		result = await self._exec(
			ctx, build_command(req), title="building", cwd=str(req.source_dir), interactive=True,
		)
		if result.aborted:
			return self._abort(ctx, Stage.BUILD)
		if result.success:
			return Stage.DONE

		logger.warning("Build attempt %d failed with exit code %d", ctx.build_attempts, result.exit_code)
		if req.build_fresh or ctx.build_attempts > 1:
			return self._fail(ctx, Stage.BUILD, result.exit_code, "build failed")
		await self.gate.ask("Remove build directory and try again?", lambda: self._prepare_retry(ctx))
		if ctx.retry_pending:
			ctx.retry_pending = False
			return Stage.BUILD
		return self._fail(ctx, Stage.BUILD, result.exit_code, "build failed")

	async def _prepare_retry(self, ctx: PipelineContext) -> None:
		req = ctx.request
		self.status.reset()
		if req.build_path.exists():
			removed = await remove_directory(
				req.build_path,
				self.host,
				self.notifier,
				elevate_command=req.elevate_command,
				env=command_env(req.env),
			)
		else:
			logger.info("No build directory at %s, nothing to remove", req.build_path)
			removed = True
		if removed:
			ctx.retry_pending = True
			self.notifier.notify("Removal succeeded. Retrying build...", Level.INFO, force=True)
