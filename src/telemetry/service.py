"""Telemetry pipeline — tick orchestration, lifecycle and query surface."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from types import TracebackType

import structlog

from src.alerts.engine import AlertEngine
from src.core.observers import Observer, ObserverList, Subscription
from src.core.types import Alert, CircuitReading, MessageType, Reading, TickResult
from src.push.broadcaster import Broadcaster
from src.storage.gateway import PersistenceGateway
from src.telemetry.sampler import Sampler
from src.telemetry.ticker import Ticker

logger = structlog.stdlib.get_logger()


class TelemetryService:
    """Runs the sample → evaluate → persist → broadcast cycle.

    Constructed explicitly and handed to whatever needs it; ``start()`` and
    ``stop()`` toggle the monitoring flag and the ticker that drives
    :meth:`run_tick`.

    Every persistence call is best-effort: a failure is logged for that one
    operation and the rest of the tick carries on. A sampling failure skips
    the tick entirely.

    Usage::

        service = TelemetryService(sampler, AlertEngine(), gateway, broadcaster)
        async with service:
            await asyncio.sleep(60)
    """

    def __init__(
        self,
        sampler: Sampler,
        engine: AlertEngine,
        gateway: PersistenceGateway,
        broadcaster: Broadcaster | None = None,
        period_ms: int = 5000,
    ) -> None:
        self._sampler = sampler
        self._engine = engine
        self._gateway = gateway
        self._broadcaster = broadcaster
        self._period_ms = period_ms
        self._ticker: Ticker | None = None
        self._monitoring = False
        self._ticks: ObserverList[TickResult] = ObserverList("telemetry_ticks")
        self._skipped_ticks = 0
        self._persistence_errors = 0

    # ── Properties ────────────────────────────────────────────────

    @property
    def monitoring(self) -> bool:
        return self._monitoring

    @property
    def period_ms(self) -> int:
        return self._period_ms

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    @property
    def persistence_errors(self) -> int:
        return self._persistence_errors

    def on_tick(self, observer: Observer[TickResult]) -> Subscription:
        return self._ticks.subscribe(observer)

    def status(self) -> dict[str, object]:
        return {
            "monitoring": self._monitoring,
            "period_ms": self._period_ms,
            "ticks": self._ticker.tick_count if self._ticker else 0,
            "skipped_ticks": self._skipped_ticks,
            "persistence_errors": self._persistence_errors,
            "subscribers": self._broadcaster.subscriber_count if self._broadcaster else 0,
        }

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        if self._monitoring:
            return
        self._monitoring = True
        self._ticker = Ticker(self._period_ms / 1000.0, self.run_tick, name="telemetry")
        self._ticker.start()
        logger.info("monitoring_started", period_ms=self._period_ms)
        if self._broadcaster is not None:
            self._broadcaster.notify(MessageType.SYSTEM_STATUS, {"monitoring": True})

    async def stop(self) -> None:
        if not self._monitoring:
            return
        self._monitoring = False
        if self._ticker is not None:
            await self._ticker.stop()
            self._ticker = None
        logger.info("monitoring_stopped")
        if self._broadcaster is not None:
            self._broadcaster.notify(MessageType.SYSTEM_STATUS, {"monitoring": False})

    async def __aenter__(self) -> TelemetryService:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # ── Tick ──────────────────────────────────────────────────────

    async def run_tick(self) -> TickResult | None:
        """Execute one full cycle. Returns None when sampling failed."""
        try:
            reading, circuits = await self._sampler.tick()
        except Exception:
            self._skipped_ticks += 1
            logger.exception("sampling_failed", skipped_ticks=self._skipped_ticks)
            return None

        alerts = self._engine.evaluate(reading, circuits)
        result = TickResult(reading=reading, circuits=circuits, alerts=alerts)

        await self._persist(result)

        if self._broadcaster is not None:
            try:
                self._broadcaster.publish(result)
            except Exception:
                logger.exception("broadcast_failed", reading_id=reading.id)

        await self._ticks.notify(result)

        logger.debug(
            "tick_complete",
            reading_id=reading.id,
            total_power=round(reading.total_power, 1),
            alerts=len(alerts),
        )
        return result

    async def _persist(self, result: TickResult) -> None:
        ops: list[tuple[str, Awaitable[None]]] = [
            ("store_reading", self._gateway.store_reading(result.reading)),
            ("store_circuit_readings", self._gateway.store_circuit_readings(result.circuits)),
        ]
        ops.extend(
            (f"store_alert:{alert.id}", self._gateway.store_alert(alert))
            for alert in result.alerts
        )
        outcomes = await asyncio.gather(*(op for _, op in ops), return_exceptions=True)
        for (name, _), outcome in zip(ops, outcomes):
            if isinstance(outcome, Exception):
                self._persistence_errors += 1
                logger.error(
                    "persistence_failed",
                    operation=name,
                    reading_id=result.reading.id,
                    error=str(outcome),
                )

    # ── Query surface ─────────────────────────────────────────────

    async def latest_reading(self) -> Reading | None:
        try:
            return await self._gateway.query_latest_reading()
        except Exception:
            logger.exception("query_failed", query="latest_reading")
            return None

    async def latest_circuit_readings(self) -> list[CircuitReading]:
        try:
            return await self._gateway.query_circuit_readings()
        except Exception:
            logger.exception("query_failed", query="circuit_readings")
            return []

    async def usage_history(self, hours: float = 24) -> list[Reading]:
        try:
            return await self._gateway.query_usage_history(hours)
        except Exception:
            logger.exception("query_failed", query="usage_history", hours=hours)
            return []

    async def active_alerts(self) -> list[Alert]:
        try:
            return await self._gateway.query_active_alerts()
        except Exception:
            logger.exception("query_failed", query="active_alerts")
            return []

    async def acknowledge_alert(self, alert_id: str) -> bool:
        """Acknowledge an alert by id.

        Idempotent. Returns False for an unknown id; storage failures
        propagate as :class:`~src.storage.exceptions.StorageError`.
        """
        found = await self._gateway.acknowledge_alert(alert_id)
        if found:
            logger.info("alert_acknowledged", alert_id=alert_id)
            if self._broadcaster is not None:
                self._broadcaster.notify(MessageType.ALERT_ACKNOWLEDGED, {"alert_id": alert_id})
        return found
