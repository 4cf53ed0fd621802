"""Tests for TelemetryService — tick cycle, persistence isolation, lifecycle."""

from __future__ import annotations

import asyncio
import datetime
import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.alerts.engine import AlertEngine
from src.core.config import CircuitConfig, SamplerConfig
from src.core.types import (
    Alert,
    AlertSeverity,
    AlertType,
    MessageType,
    TickResult,
)
from src.storage.exceptions import StorageError
from src.storage.memory import InMemoryGateway
from src.telemetry.exceptions import SamplingError
from src.telemetry.sampler import Sampler
from src.telemetry.service import TelemetryService

_NOON = datetime.datetime(2026, 10, 19, 12, 0, tzinfo=datetime.UTC)

# ── Helpers ─────────────────────────────────────────────────────


class FailingGateway(InMemoryGateway):
    """In-memory gateway whose selected operations raise StorageError."""

    def __init__(self, failing: set[str]) -> None:
        super().__init__()
        self.failing = failing

    def _maybe_fail(self, name: str) -> None:
        if name in self.failing:
            raise StorageError(f"{name} failed")

    async def store_reading(self, reading):  # type: ignore[no-untyped-def]
        self._maybe_fail("store_reading")
        await super().store_reading(reading)

    async def store_circuit_readings(self, readings):  # type: ignore[no-untyped-def]
        self._maybe_fail("store_circuit_readings")
        await super().store_circuit_readings(readings)

    async def store_alert(self, alert):  # type: ignore[no-untyped-def]
        self._maybe_fail("store_alert")
        await super().store_alert(alert)

    async def acknowledge_alert(self, alert_id):  # type: ignore[no-untyped-def]
        self._maybe_fail("acknowledge_alert")
        return await super().acknowledge_alert(alert_id)

    async def query_latest_reading(self):  # type: ignore[no-untyped-def]
        self._maybe_fail("query_latest_reading")
        return await super().query_latest_reading()

    async def query_active_alerts(self):  # type: ignore[no-untyped-def]
        self._maybe_fail("query_active_alerts")
        return await super().query_active_alerts()


def _sampler(config: SamplerConfig | None = None) -> Sampler:
    return Sampler(
        config=config,
        circuits=[
            CircuitConfig(id="main", name="Main Panel", capacity_w=5000, share=1.0,
                          split_phase=False),
            CircuitConfig(id="kitchen", name="Kitchen", capacity_w=2000, share=0.2),
        ],
        clock=lambda: _NOON,
        rng=random.Random(1),
        tz=datetime.UTC,
    )


def _hot_config() -> SamplerConfig:
    """Noon with no noise yields 4800 W: high usage plus a critical main circuit."""
    return SamplerConfig(base_load_w=3300.0, variable_load_w=1500.0, noise_w=0.0)


def _broadcaster() -> MagicMock:
    broadcaster = MagicMock()
    broadcaster.publish = MagicMock(return_value=1)
    broadcaster.notify = MagicMock(return_value=1)
    broadcaster.subscriber_count = 0
    return broadcaster


def _service(
    gateway: InMemoryGateway | None = None,
    broadcaster: MagicMock | None = None,
    sampler: Sampler | None = None,
) -> TelemetryService:
    return TelemetryService(
        sampler=sampler or _sampler(),
        engine=AlertEngine(),
        gateway=gateway or InMemoryGateway(),
        broadcaster=broadcaster,  # type: ignore[arg-type]
        period_ms=60_000,
    )


def _alert(alert_id: str = "alert_1") -> Alert:
    return Alert(
        id=alert_id,
        type=AlertType.HIGH_USAGE,
        severity=AlertSeverity.MEDIUM,
        message="High power usage detected: 4200W",
        value=4200.0,
        threshold=4000.0,
        timestamp=_NOON,
    )


# ── Tick cycle ──────────────────────────────────────────────────


class TestRunTick:
    async def test_tick_persists_and_publishes(self) -> None:
        gateway = InMemoryGateway()
        broadcaster = _broadcaster()
        service = _service(gateway, broadcaster, _sampler(_hot_config()))

        result = await service.run_tick()

        assert result is not None
        assert result.reading.total_power == pytest.approx(4800.0)
        assert {a.type for a in result.alerts} == {
            AlertType.HIGH_USAGE,
            AlertType.CIRCUIT_OVERLOAD,
        }
        latest = await gateway.query_latest_reading()
        assert latest is not None and latest.id == result.reading.id
        assert len(await gateway.query_circuit_readings()) == 2
        assert len(await gateway.query_active_alerts()) == len(result.alerts)
        broadcaster.publish.assert_called_once_with(result)

    async def test_tick_observers_notified(self) -> None:
        service = _service()
        seen: list[TickResult] = []
        service.on_tick(seen.append)
        result = await service.run_tick()
        assert seen == [result]

    async def test_sampling_failure_skips_tick(self) -> None:
        sampler = MagicMock()
        sampler.tick = AsyncMock(side_effect=SamplingError("meter offline"))
        gateway = InMemoryGateway()
        broadcaster = _broadcaster()
        service = _service(gateway, broadcaster, sampler)

        assert await service.run_tick() is None
        assert service.skipped_ticks == 1
        assert await gateway.query_latest_reading() is None
        broadcaster.publish.assert_not_called()

    async def test_reading_failure_does_not_block_circuits_or_alerts(self) -> None:
        gateway = FailingGateway({"store_reading"})
        broadcaster = _broadcaster()
        service = _service(gateway, broadcaster, _sampler(_hot_config()))

        result = await service.run_tick()

        assert result is not None
        assert service.persistence_errors == 1
        assert len(await gateway.query_circuit_readings()) == 2
        assert len(await gateway.query_active_alerts()) == len(result.alerts)
        broadcaster.publish.assert_called_once_with(result)

    async def test_every_failed_write_is_counted(self) -> None:
        gateway = FailingGateway({"store_reading", "store_circuit_readings", "store_alert"})
        service = _service(gateway, _broadcaster(), _sampler(_hot_config()))
        result = await service.run_tick()
        assert result is not None
        assert service.persistence_errors == 2 + len(result.alerts)

    async def test_broadcast_failure_does_not_fail_tick(self) -> None:
        broadcaster = _broadcaster()
        broadcaster.publish.side_effect = RuntimeError("boom")
        service = _service(broadcaster=broadcaster)
        assert await service.run_tick() is not None

    async def test_works_without_broadcaster(self) -> None:
        service = _service()
        assert await service.run_tick() is not None
        assert service.status()["subscribers"] == 0


# ── Lifecycle ───────────────────────────────────────────────────


class TestLifecycle:
    async def test_start_runs_first_tick_and_announces(self) -> None:
        gateway = InMemoryGateway()
        broadcaster = _broadcaster()
        service = _service(gateway, broadcaster)
        ticked = asyncio.Event()
        service.on_tick(lambda _: ticked.set())

        await service.start()
        assert service.monitoring
        await asyncio.wait_for(ticked.wait(), timeout=1.0)
        await service.stop()

        assert not service.monitoring
        assert await gateway.query_latest_reading() is not None
        broadcaster.notify.assert_any_call(MessageType.SYSTEM_STATUS, {"monitoring": True})
        broadcaster.notify.assert_any_call(MessageType.SYSTEM_STATUS, {"monitoring": False})

    async def test_start_and_stop_are_idempotent(self) -> None:
        broadcaster = _broadcaster()
        service = _service(broadcaster=broadcaster)
        await service.start()
        await service.start()
        await service.stop()
        await service.stop()
        assert broadcaster.notify.call_count == 2

    async def test_context_manager(self) -> None:
        service = _service()
        async with service:
            assert service.monitoring
        assert not service.monitoring

    async def test_status_snapshot(self) -> None:
        service = _service()
        status = service.status()
        assert status["monitoring"] is False
        assert status["period_ms"] == 60_000
        assert status["ticks"] == 0


# ── Queries and acknowledgement ─────────────────────────────────


class TestQueries:
    async def test_query_failures_return_empty(self) -> None:
        gateway = FailingGateway({"query_latest_reading", "query_active_alerts"})
        service = _service(gateway)
        assert await service.latest_reading() is None
        assert await service.active_alerts() == []

    async def test_usage_history_passes_window(self) -> None:
        gateway = MagicMock()
        gateway.query_usage_history = AsyncMock(return_value=[])
        service = _service(gateway)  # type: ignore[arg-type]
        await service.usage_history(6)
        gateway.query_usage_history.assert_awaited_once_with(6)


class TestAcknowledge:
    async def test_acknowledge_is_idempotent(self) -> None:
        gateway = InMemoryGateway()
        await gateway.store_alert(_alert())
        broadcaster = _broadcaster()
        service = _service(gateway, broadcaster)

        assert await service.acknowledge_alert("alert_1") is True
        assert await service.acknowledge_alert("alert_1") is True
        assert await service.active_alerts() == []
        broadcaster.notify.assert_called_with(
            MessageType.ALERT_ACKNOWLEDGED, {"alert_id": "alert_1"}
        )

    async def test_unknown_alert_returns_false(self) -> None:
        broadcaster = _broadcaster()
        service = _service(broadcaster=broadcaster)
        assert await service.acknowledge_alert("missing") is False
        broadcaster.notify.assert_not_called()

    async def test_storage_error_propagates(self) -> None:
        service = _service(FailingGateway({"acknowledge_alert"}))
        with pytest.raises(StorageError):
            await service.acknowledge_alert("alert_1")
