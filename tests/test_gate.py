"""Tests for the confirmation gate."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nvim_updater.gate import (
	ConfirmationGate,
	ConfirmationRequest,
	Decision,
	console_responder,
	fixed_responder,
	parse_answer,
)
from nvim_updater.notifier import Level


@pytest.fixture()
def notifier() -> MagicMock:
	return MagicMock()


class TestParseAnswer:
	@pytest.mark.parametrize("text", ["y", "Y", "yes", " Yes "])
	def test_accept(self, text: str) -> None:
		assert parse_answer(text) is Decision.ACCEPT

	@pytest.mark.parametrize("text", ["n", "no", "NO"])
	def test_decline(self, text: str) -> None:
		assert parse_answer(text) is Decision.DECLINE

	@pytest.mark.parametrize("text", ["q", "", "maybe"])
	def test_cancel(self, text: str) -> None:
		assert parse_answer(text) is Decision.CANCEL


class TestConfirmationRequest:
	def test_auto_fields(self) -> None:
		a = ConfirmationRequest(prompt="Go?")
		b = ConfirmationRequest(prompt="Go?")
		assert len(a.request_id) == 12
		assert a.request_id != b.request_id
		assert a.created_at > 0


class TestConfirmationGate:
	@pytest.mark.asyncio
	async def test_accept_calls_action_once(self, notifier: MagicMock) -> None:
		gate = ConfirmationGate(notifier, fixed_responder(Decision.ACCEPT))
		action = MagicMock()

		assert await gate.ask("Proceed?", action) is True
		action.assert_called_once_with()
		notifier.notify.assert_not_called()

	@pytest.mark.asyncio
	async def test_async_action_is_awaited(self, notifier: MagicMock) -> None:
		gate = ConfirmationGate(notifier, fixed_responder(Decision.ACCEPT))
		action = AsyncMock()

		await gate.ask("Proceed?", action)
		action.assert_awaited_once()

	@pytest.mark.asyncio
	@pytest.mark.parametrize("decision", [Decision.DECLINE, Decision.CANCEL])
	async def test_decline_and_cancel_only_notify(self, notifier: MagicMock, decision: Decision) -> None:
		gate = ConfirmationGate(notifier, fixed_responder(decision))
		action = MagicMock()

		assert await gate.ask("Proceed?", action) is False
		action.assert_not_called()
		notifier.notify.assert_called_once_with("Action Canceled", Level.INFO)

	@pytest.mark.asyncio
	async def test_nested_prompts(self, notifier: MagicMock) -> None:
		prompts: list[str] = []

		async def responder(req: ConfirmationRequest) -> Decision:
			prompts.append(req.prompt)
			return Decision.ACCEPT

		gate = ConfirmationGate(notifier, responder)
		inner = MagicMock()

		async def outer() -> None:
			await gate.ask("Inner?", inner)

		await gate.ask("Outer?", outer)
		assert prompts == ["Outer?", "Inner?"]
		inner.assert_called_once()

	@pytest.mark.asyncio
	async def test_pending_prompt_does_not_block_loop(self, notifier: MagicMock) -> None:
		answer: asyncio.Future[Decision] = asyncio.get_running_loop().create_future()

		async def responder(req: ConfirmationRequest) -> Decision:
			return await answer

		gate = ConfirmationGate(notifier, responder)
		task = asyncio.create_task(gate.ask("Wait?", MagicMock()))
		await asyncio.sleep(0.01)
		assert not task.done()

		answer.set_result(Decision.DECLINE)
		assert await task is False


class TestConsoleResponder:
	@pytest.mark.asyncio
	async def test_reads_stdin(self) -> None:
		with patch("builtins.input", return_value="yes"):
			assert await console_responder(ConfirmationRequest(prompt="Go?")) is Decision.ACCEPT

	@pytest.mark.asyncio
	async def test_eof_cancels(self) -> None:
		with patch("builtins.input", side_effect=EOFError):
			assert await console_responder(ConfirmationRequest(prompt="Go?")) is Decision.CANCEL
