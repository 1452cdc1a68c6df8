"""Runtime context shared by one updater invocation."""

from __future__ import annotations

from dataclasses import dataclass, field

from nvim_updater.config import UpdaterConfig
from nvim_updater.gate import ConfirmationGate, Responder
from nvim_updater.notifier import Notifier, TelegramNotifier
from nvim_updater.process import ProcessHost, SurfaceFactory
from nvim_updater.prober import DEFAULT_TIMEOUT
from nvim_updater.status import StatusCache


@dataclass
class UpdaterContext:
	"""Collaborators for the orchestrator. Owned and closed by the caller."""

	host: ProcessHost
	notifier: Notifier
	gate: ConfirmationGate
	status: StatusCache = field(default_factory=StatusCache)
	probe_timeout: float = DEFAULT_TIMEOUT

	@classmethod
	def from_config(
		cls,
		config: UpdaterConfig,
		*,
		surface_factory: SurfaceFactory | None = None,
		responder: Responder | None = None,
		headless: bool | None = None,
	) -> UpdaterContext:
		tg = config.notifications.telegram
		forward = TelegramNotifier(tg.bot_token, tg.chat_id) if tg.bot_token and tg.chat_id else None
		notifier = Notifier(verbose=config.notifications.verbose, forward=forward)
		return cls(
			host=ProcessHost(surface_factory=surface_factory, headless=headless),
			notifier=notifier,
			gate=ConfirmationGate(notifier, responder),
			status=StatusCache(),
			probe_timeout=config.git.probe_timeout,
		)

	async def close(self) -> None:
		self.host.close_all()
		await self.notifier.close()
