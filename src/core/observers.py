"""Typed observer lists with explicit subscription handles."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

import structlog

logger = structlog.stdlib.get_logger()

T = TypeVar("T")

# Observers may be plain functions or coroutines.
Observer = Callable[[T], Awaitable[None] | None]


class Subscription:
    """Handle returned by ``subscribe``; ``cancel()`` detaches the observer."""

    def __init__(self, cancel_fn: Callable[[], None]) -> None:
        self._cancel_fn: Callable[[], None] | None = cancel_fn

    @property
    def active(self) -> bool:
        return self._cancel_fn is not None

    def cancel(self) -> None:
        if self._cancel_fn is not None:
            self._cancel_fn()
            self._cancel_fn = None


class ObserverList(Generic[T]):
    """Ordered list of callbacks notified with one value at a time.

    A failing observer is logged and skipped; it never prevents the
    remaining observers from being notified.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._observers: list[Observer[T]] = []
        self._pending: set[asyncio.Future[None]] = set()

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(self, observer: Observer[T]) -> Subscription:
        self._observers.append(observer)
        return Subscription(lambda: self._remove(observer))

    def _remove(self, observer: Observer[T]) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def notify_nowait(self, value: T) -> None:
        """Notify from synchronous code; coroutine observers run as tasks."""
        for observer in list(self._observers):
            try:
                result = observer(value)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(self._guard(result))
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)
            except Exception:
                logger.exception("observer_error", observers=self._name)

    async def _guard(self, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception:
            logger.exception("observer_error", observers=self._name)

    async def notify(self, value: T) -> None:
        for observer in list(self._observers):
            try:
                result = observer(value)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("observer_error", observers=self._name)
