"""Data models for nvim-updater pipeline runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from nvim_updater.constants import ABORTED


class BuildVariant(str, Enum):
	"""CMAKE_BUILD_TYPE values accepted by the build."""

	RELEASE = "Release"
	DEBUG = "Debug"
	REL_WITH_DEB_INFO = "RelWithDebInfo"

	@classmethod
	def parse(cls, value: str) -> BuildVariant:
		"""Case-insensitive lookup by value."""
		for variant in cls:
			if variant.value.lower() == value.strip().lower():
				return variant
		allowed = ", ".join(v.value for v in cls)
		raise ValueError(f"Unknown build type {value!r} (expected one of: {allowed})")


class Stage(Enum):
	ACQUIRE = "acquire"
	SYNC = "sync"
	SWITCH = "switch"
	BUILD = "build"
	DONE = "done"
	FAILED = "failed"

	@property
	def terminal(self) -> bool:
		return self in (Stage.DONE, Stage.FAILED)


@dataclass(frozen=True)
class PipelineRequest:
	"""Everything one pipeline run needs. Immutable for the run's lifetime."""

	source_dir: Path
	target: str
	repo: str = ""
	variant: BuildVariant = BuildVariant.RELEASE
	force_update: bool = False
	use_shallow_clone: bool = True
	update_before_switch: bool = True
	build_fresh: bool = True
	make_command: str = "make"
	elevate_command: str = "sudo"
	build_dir: str = "build"
	env: dict[str, str] = field(default_factory=dict)

	@property
	def build_path(self) -> Path:
		return self.source_dir / self.build_dir


@dataclass
class RepositoryState:
	"""Observed state of a source checkout. Derived on demand, never persisted."""

	exists: bool = False
	is_shallow: bool = False
	current_ref: str | None = None  # "HEAD" when detached
	remote_ahead_count: int | None = None  # None = unknown

	@property
	def detached(self) -> bool:
		return self.current_ref == "HEAD"


class OutcomeKind(Enum):
	SUCCESS = "success"
	FAILED = "failed"
	ABORTED = "aborted"


@dataclass(frozen=True)
class PipelineOutcome:
	"""Terminal result of a pipeline run."""

	kind: OutcomeKind
	stage: Stage | None = None
	exit_code: int | None = None
	reason: str = ""

	@classmethod
	def success(cls) -> PipelineOutcome:
		return cls(OutcomeKind.SUCCESS)

	@classmethod
	def failed(cls, stage: Stage | None, exit_code: int | None, reason: str = "") -> PipelineOutcome:
		return cls(OutcomeKind.FAILED, stage, exit_code, reason)

	@classmethod
	def aborted(cls, stage: Stage) -> PipelineOutcome:
		return cls(OutcomeKind.ABORTED, stage, ABORTED, "closed before completion")

	@property
	def ok(self) -> bool:
		return self.kind is OutcomeKind.SUCCESS

	def describe(self) -> str:
		if self.kind is OutcomeKind.SUCCESS:
			return "success"
		where = f" during {self.stage.value}" if self.stage else ""
		if self.kind is OutcomeKind.ABORTED:
			return f"aborted{where}"
		code = "n/a" if self.exit_code is None else str(self.exit_code)
		detail = f": {self.reason}" if self.reason else ""
		return f"failed{where} (exit code {code}){detail}"
