"""Fixed-period async ticker with an explicit stop token."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.stdlib.get_logger()

TickCallback = Callable[[], Awaitable[object]]


class Ticker:
    """Runs an async callback once per period until stopped.

    The first tick fires immediately. Each tick is awaited to completion
    before the next one is scheduled, so ticks never overlap; the wait
    before the next tick is shortened by however long the tick took.
    Exceptions from the callback are logged and counted, and the ticker
    keeps going.

    ``stop()`` sets the stop token and waits for the in-flight tick, if
    any, to finish.
    """

    def __init__(self, period_secs: float, callback: TickCallback, name: str = "ticker") -> None:
        if period_secs <= 0:
            raise ValueError("period_secs must be positive")
        self._period = period_secs
        self._callback = callback
        self._name = name
        self._stop_token = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._tick_count = 0
        self._error_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def period_secs(self) -> float:
        return self._period

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def error_count(self) -> int:
        return self._error_count

    def start(self) -> None:
        if self.running:
            return
        self._stop_token = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self._name)

    async def stop(self) -> None:
        self._stop_token.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop_token.is_set():
            started = loop.time()
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._error_count += 1
                logger.exception(
                    "ticker_callback_error",
                    ticker=self._name,
                    error_count=self._error_count,
                )
            self._tick_count += 1

            remaining = max(self._period - (loop.time() - started), 0.0)
            try:
                await asyncio.wait_for(self._stop_token.wait(), timeout=remaining)
            except TimeoutError:
                pass
