"""Confirmation gate for destructive and corrective actions.

A prompt suspends only the coroutine that awaits it. The decision comes
from a responder: the console (y/n/q on stdin) or a fixed answer for
unattended runs.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from nvim_updater.notifier import Level, Notifier

logger = logging.getLogger(__name__)


class Decision(enum.Enum):
	ACCEPT = "accept"
	DECLINE = "decline"
	CANCEL = "cancel"


@dataclass
class ConfirmationRequest:
	"""A pending yes/no question."""

	prompt: str = ""
	request_id: str = ""
	created_at: float = 0.0

	def __post_init__(self) -> None:
		if not self.request_id:
			self.request_id = uuid.uuid4().hex[:12]
		if not self.created_at:
			self.created_at = time.monotonic()


Responder = Callable[[ConfirmationRequest], Awaitable[Decision]]

_ANSWERS = {
	"y": Decision.ACCEPT,
	"yes": Decision.ACCEPT,
	"n": Decision.DECLINE,
	"no": Decision.DECLINE,
	"q": Decision.CANCEL,
	"": Decision.CANCEL,
}


def parse_answer(text: str) -> Decision:
	return _ANSWERS.get(text.strip().lower(), Decision.CANCEL)


async def console_responder(req: ConfirmationRequest) -> Decision:
	"""Read an answer from stdin in a worker thread so the loop keeps running."""
	try:
		answer = await asyncio.to_thread(input, f"{req.prompt} [y/n]: ")
	except EOFError:
		return Decision.CANCEL
	return parse_answer(answer)


def fixed_responder(decision: Decision) -> Responder:
	"""Responder that always returns the same decision (--yes, headless)."""

	async def _respond(req: ConfirmationRequest) -> Decision:
		logger.info("Auto-%s: %s", decision.value, req.prompt)
		return decision

	return _respond


class ConfirmationGate:
	"""Asks before acting. on_accept runs exactly once, only on acceptance."""

	def __init__(self, notifier: Notifier, responder: Responder | None = None) -> None:
		self._notifier = notifier
		self._responder = responder or console_responder

	async def ask(self, prompt: str, on_accept: Callable[[], Any]) -> bool:
		"""Ask prompt; on acceptance call (and await, if needed) on_accept.

		Returns True if the action was accepted.
		"""
		req = ConfirmationRequest(prompt=prompt)
		logger.debug("Confirmation requested: id=%s prompt=%r", req.request_id, prompt)
		decision = await self._responder(req)
		logger.debug("Confirmation %s: %s", req.request_id, decision.value)
		if decision is not Decision.ACCEPT:
			self._notifier.notify("Action Canceled", Level.INFO)
			return False
		result = on_accept()
		if inspect.isawaitable(result):
			await result
		return True
