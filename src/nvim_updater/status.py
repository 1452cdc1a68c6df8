"""Last-known update status, readable without blocking."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class StatusCache:
	"""Single shared slot holding the number of pending upstream commits.

	None means unknown (never checked, last run failed, or the source tree
	was removed).
	"""

	def __init__(self) -> None:
		self.count: int | None = None

	def set_count(self, count: int) -> None:
		logger.debug("Status count %s -> %s", self.count, count)
		self.count = count

	def mark_up_to_date(self) -> None:
		self.set_count(0)

	def reset(self) -> None:
		logger.debug("Status count %s -> unknown", self.count)
		self.count = None


@dataclass(frozen=True)
class StatusLine:
	count: str
	text: str
	icon: str
	severity: str  # "error" | "ok" | "warn"

	@property
	def icon_text(self) -> str:
		return f"{self.icon} {self.text}"

	@property
	def icon_count(self) -> str:
		return f"{self.icon} {self.count}"


def status_line(cache: StatusCache) -> StatusLine:
	count = cache.count
	if count is None:
		return StatusLine(count="?", text="ERROR", icon="✗", severity="error")
	if count == 0:
		return StatusLine(count="0", text="Up to date", icon="✓", severity="ok")
	noun = "update" if count == 1 else "updates"
	return StatusLine(count=str(count), text=f"{count} new {noun}", icon="↑", severity="warn")
