"""
Tickers — Drive a periodic coroutine.

PeriodicTicker runs the callback on a fixed interval in a background task.
ManualTicker has the same surface but only fires when told to, so tests can
step the dispatcher and scheduler without sleeping.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()

TickCallback = Callable[[], Awaitable[Any]]


class PeriodicTicker:
    """
    Usage:
        ticker = PeriodicTicker("dispatcher", 30.0, dispatcher.tick)
        ticker.start()
        ...
        await ticker.stop()
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: TickCallback,
        initial_delay_seconds: float = 0.0,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.initial_delay_seconds = initial_delay_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._run(), name=f"ticker:{self.name}")
        logger.info("ticker_started", ticker=self.name, interval=self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("ticker_stopped", ticker=self.name)

    async def _run(self) -> None:
        if self.initial_delay_seconds > 0:
            await asyncio.sleep(self.initial_delay_seconds)
        while True:
            await self._fire_once()
            await asyncio.sleep(self.interval_seconds)

    async def _fire_once(self) -> None:
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A bad tick must not kill the loop
            logger.error("ticker_callback_error", ticker=self.name, error=str(e), exc_info=True)


class ManualTicker:
    """Same interface as PeriodicTicker; ``fire()`` runs one tick inline."""

    def __init__(
        self,
        name: str = "manual",
        interval_seconds: float = 0.0,
        callback: Optional[TickCallback] = None,
        initial_delay_seconds: float = 0.0,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.initial_delay_seconds = initial_delay_seconds
        self.running = False
        self.fired = 0

    def start(self) -> None:
        self.running = True

    async def stop(self) -> None:
        self.running = False

    async def fire(self) -> Any:
        if self.callback is None:
            raise RuntimeError(f"Ticker {self.name!r} has no callback")
        self.fired += 1
        return await self.callback()
