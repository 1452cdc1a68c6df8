"""User-facing notifications.

Notifier gates messages by verbosity and writes them to the
``nvim_updater.notify`` logger. When Telegram credentials are configured,
the end of every update, clone and removal is also reported as a single
Telegram message (async httpx client) carrying the stage and exit code.
"""

from __future__ import annotations

import enum
import logging

import httpx

from nvim_updater.models import OutcomeKind, PipelineOutcome, PipelineRequest

logger = logging.getLogger(__name__)
notify_logger = logging.getLogger("nvim_updater.notify")

TELEGRAM_MAX_LEN = 4096

_OUTCOME_MARKS = {
	OutcomeKind.SUCCESS: "OK",
	OutcomeKind.FAILED: "FAILED",
	OutcomeKind.ABORTED: "ABORTED",
}


class Level(enum.IntEnum):
	DEBUG = logging.DEBUG
	INFO = logging.INFO
	WARN = logging.WARNING
	ERROR = logging.ERROR


def format_outcome(action: str, outcome: PipelineOutcome, request: PipelineRequest) -> str:
	"""One report per finished run: what ran, where, and how it ended."""
	lines = [
		f"[{_OUTCOME_MARKS[outcome.kind]}] nvim-updater {action}",
		f"Source: {request.source_dir}",
		f"Target: {request.target}",
	]
	if not outcome.ok:
		if outcome.stage is not None:
			lines.append(f"Stage: {outcome.stage.value}")
		lines.append(f"Exit code: {'n/a' if outcome.exit_code is None else outcome.exit_code}")
		if outcome.reason:
			lines.append(f"Reason: {outcome.reason}")
	return "\n".join(lines)


class TelegramNotifier:
	"""Sends run reports to a Telegram chat via the Bot API."""

	def __init__(self, bot_token: str, chat_id: str) -> None:
		self._bot_token = bot_token
		self._chat_id = chat_id
		self._client: httpx.AsyncClient | None = None

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=10.0)
		return self._client

	async def send(self, text: str) -> bool:
		"""Post one message. Delivery problems are logged, never raised."""
		if len(text) > TELEGRAM_MAX_LEN:
			text = text[:TELEGRAM_MAX_LEN - 3] + "..."
		try:
			client = await self._ensure_client()
			response = await client.post(
				f"https://api.telegram.org/bot{self._bot_token}/sendMessage",
				json={
					"chat_id": self._chat_id,
					"text": text,
					"disable_web_page_preview": True,
				},
			)
		except httpx.HTTPError as exc:
			logger.warning("Telegram send failed: %s", exc)
			return False
		if not response.is_success:
			logger.warning("Telegram rejected the report: HTTP %d", response.status_code)
			return False
		return True

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None


class Notifier:
	"""Severity-levelled notification sink.

	INFO and DEBUG are suppressed unless verbose is on or the call is forced.
	"""

	def __init__(self, verbose: bool = False, forward: TelegramNotifier | None = None) -> None:
		self.verbose = verbose
		self._forward = forward

	def notify(self, message: str, level: Level = Level.INFO, force: bool = False) -> bool:
		"""Emit message. Returns False if it was suppressed by verbosity."""
		if level in (Level.INFO, Level.DEBUG) and not self.verbose and not force:
			return False
		notify_logger.log(int(level), message)
		return True

	async def report(self, action: str, outcome: PipelineOutcome, request: PipelineRequest) -> None:
		"""Forward the terminal outcome of a run, when forwarding is configured."""
		if self._forward is None:
			return
		await self._forward.send(format_outcome(action, outcome, request))

	async def close(self) -> None:
		if self._forward is not None:
			await self._forward.close()
