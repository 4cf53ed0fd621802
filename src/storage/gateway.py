"""Persistence gateway contract consumed by the telemetry pipeline."""

from __future__ import annotations

import abc
import datetime
from types import TracebackType

from src.core.types import Alert, CircuitReading, Reading


class PersistenceGateway(abc.ABC):
    """Durable store for readings, circuit breakdowns and alerts.

    Every operation is asynchronous and may fail independently with a
    :class:`~src.storage.exceptions.StorageError`. Callers in the pipeline
    treat each call as best-effort.
    """

    async def open(self) -> None:
        """Prepare the backing store. No-op by default."""

    async def close(self) -> None:
        """Release the backing store. No-op by default."""

    # ── Writes ──────────────────────────────────────────────────

    @abc.abstractmethod
    async def store_reading(self, reading: Reading) -> None:
        """Insert one aggregate reading."""

    @abc.abstractmethod
    async def store_circuit_readings(self, readings: list[CircuitReading]) -> None:
        """Insert the per-circuit breakdown of one reading."""

    @abc.abstractmethod
    async def store_alert(self, alert: Alert) -> None:
        """Insert one alert."""

    @abc.abstractmethod
    async def acknowledge_alert(self, alert_id: str) -> bool:
        """Mark an alert as acknowledged.

        Idempotent: acknowledging an already-acknowledged alert succeeds
        without effect. Returns False only when no alert has that id.
        """

    # ── Queries ─────────────────────────────────────────────────

    @abc.abstractmethod
    async def query_latest_reading(self) -> Reading | None:
        """Most recent aggregate reading, if any."""

    @abc.abstractmethod
    async def query_circuit_readings(self) -> list[CircuitReading]:
        """Latest reading of every circuit, ordered by circuit id."""

    @abc.abstractmethod
    async def query_usage_history(self, window_hours: float = 24) -> list[Reading]:
        """Readings created within the rolling window, oldest first."""

    @abc.abstractmethod
    async def query_active_alerts(self) -> list[Alert]:
        """Unacknowledged alerts, newest first."""

    @abc.abstractmethod
    async def query_average_power(self, since: datetime.datetime) -> float | None:
        """Mean ``total_power`` of readings created at or after *since*.

        Returns None when no readings fall in the window.
        """

    async def __aenter__(self) -> PersistenceGateway:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
