"""
Engine runtime — Builds and runs the whole execution engine from settings.

Wiring:
  store ─┬─ WorkQueue ─┬─ JobDispatcher ◀── HandlerRegistry
         │             │      ├─ CAMPAIGN_STEP → StepExecutor
         │             │      └─ CLEANUP       → CleanupHandler
         │             ├─ CampaignScheduler (sweep on its own ticker)
         │             └─ CleanupScheduler  (daily CLEANUP job)
         └─ CampaignControl (start / pause / trigger / stats)
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.base import ChannelSenderRegistry
from channels.email_sender import SmtpEmailSender
from channels.voice_sender import TwilioVoiceSender
from channels.whatsapp_sender import WhatsAppBusinessSender
from config.settings import Settings, get_settings
from core.clock import Clock, SYSTEM_CLOCK
from core.control import CampaignControl
from core.credentials import StoredCredentialResolver
from core.executor import StepExecutor
from core.maintenance import CleanupHandler, CleanupScheduler
from core.rendering import TemplateRenderer
from core.scheduler import CampaignScheduler
from database.store_base import BaseOutreachStore
from database.store_factory import create_store
from job_queue.dispatcher import HandlerRegistry, JobDispatcher
from job_queue.work_queue import WorkQueue
from models.schemas import JobType

logger = structlog.get_logger()


def default_senders() -> ChannelSenderRegistry:
    registry = ChannelSenderRegistry()
    registry.register(SmtpEmailSender())
    registry.register(WhatsAppBusinessSender())
    registry.register(TwilioVoiceSender())
    return registry


class EngineRuntime:
    """
    Usage:
        runtime = EngineRuntime(get_settings())
        await runtime.start()          # init tables, start tickers
        ...
        await runtime.stop()

    Tests pass ``store`` / ``senders`` / ``clock`` and call
    ``runtime.dispatcher.tick()`` and ``runtime.scheduler.sweep()`` directly.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[BaseOutreachStore] = None,
        senders: Optional[ChannelSenderRegistry] = None,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.store = store or create_store({
            "store_backend": self.settings.database.store_backend,
            "url": self.settings.database.url,
        })
        self.senders = senders or default_senders()

        jobs = self.settings.jobs
        self.queue = WorkQueue(self.store, clock=clock, default_max_attempts=jobs.max_attempts)

        self.executor = StepExecutor(
            self.store,
            self.senders,
            renderer=TemplateRenderer(),
            credentials=StoredCredentialResolver(self.settings.credentials.encryption_key),
            clock=clock,
        )
        self.cleanup_handler = CleanupHandler(self.queue)

        self.handlers = HandlerRegistry()
        self.handlers.register(JobType.CAMPAIGN_STEP, self.executor.handle)
        self.handlers.register(JobType.CLEANUP, self.cleanup_handler.handle)

        self.dispatcher = JobDispatcher(
            self.queue, self.handlers,
            concurrency=jobs.concurrency,
            timeout_seconds=jobs.timeout_seconds,
        )
        self.scheduler = CampaignScheduler(
            self.store, self.queue, clock=clock,
            batch_size=self.settings.scheduler.batch_size,
            priority=self.settings.scheduler.campaign_step_priority,
        )
        self.cleanup_scheduler = CleanupScheduler(
            self.queue, retention_days=self.settings.cleanup.retention_days,
        )
        self.control = CampaignControl(self.store, self.scheduler, clock=clock)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, background: bool = True) -> None:
        if self._started:
            return
        if self.settings.database.store_backend == "sql":
            from database.session import init_db
            await init_db(self.settings.database.url)

        if background:
            self.dispatcher.start_background(self.settings.jobs.poll_interval_seconds)
            self.scheduler.start_background(
                self.settings.scheduler.interval_seconds,
                self.settings.scheduler.initial_delay_seconds,
            )
            self.cleanup_scheduler.start_background(self.settings.cleanup.interval_seconds)
        self._started = True
        logger.info("engine_started",
                    store=type(self.store).__name__,
                    background=background,
                    channels=[c.value for c in self.senders.get_available()])

    async def stop(self) -> None:
        if not self._started:
            return
        await self.dispatcher.stop()
        await self.scheduler.stop()
        await self.cleanup_scheduler.stop()
        await self.senders.shutdown_all()
        if self.settings.database.store_backend == "sql":
            from database.session import close_db
            await close_db()
        self._started = False
        logger.info("engine_stopped")
