"""In-process gateway — keeps bounded history in memory."""

from __future__ import annotations

import datetime
from collections import deque

from src.core.types import Alert, CircuitReading, Reading, utc_now
from src.storage.gateway import PersistenceGateway

# 31 days of 5 s ticks, enough for the longest monthly usage window.
MONTH_OF_TICKS = 31 * 24 * 3600 // 5


class InMemoryGateway(PersistenceGateway):
    """Gateway backed by plain Python containers.

    Readings are kept in a bounded deque, by default a 31-day month of 5 s
    ticks so the monthly usage average sees the whole month. Alerts are
    never evicted since the pipeline never deletes them.
    """

    def __init__(self, max_readings: int = MONTH_OF_TICKS) -> None:
        self._readings: deque[Reading] = deque(maxlen=max_readings)
        self._latest_circuits: dict[str, CircuitReading] = {}
        self._alerts: dict[str, Alert] = {}

    @property
    def max_readings(self) -> int:
        return self._readings.maxlen or 0

    async def store_reading(self, reading: Reading) -> None:
        self._readings.append(reading.model_copy())

    async def store_circuit_readings(self, readings: list[CircuitReading]) -> None:
        for cr in readings:
            current = self._latest_circuits.get(cr.circuit_id)
            if current is None or cr.timestamp >= current.timestamp:
                self._latest_circuits[cr.circuit_id] = cr.model_copy()

    async def store_alert(self, alert: Alert) -> None:
        self._alerts[alert.id] = alert.model_copy()

    async def acknowledge_alert(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return False
        alert.acknowledged = True
        return True

    async def query_latest_reading(self) -> Reading | None:
        if not self._readings:
            return None
        return max(self._readings, key=lambda r: r.created_at).model_copy()

    async def query_circuit_readings(self) -> list[CircuitReading]:
        return [
            self._latest_circuits[cid].model_copy()
            for cid in sorted(self._latest_circuits)
        ]

    async def query_usage_history(self, window_hours: float = 24) -> list[Reading]:
        since = utc_now() - datetime.timedelta(hours=window_hours)
        history = [r.model_copy() for r in self._readings if r.created_at >= since]
        history.sort(key=lambda r: r.created_at)
        return history

    async def query_active_alerts(self) -> list[Alert]:
        active = [a.model_copy() for a in self._alerts.values() if not a.acknowledged]
        active.sort(key=lambda a: a.timestamp, reverse=True)
        return active

    async def query_average_power(self, since: datetime.datetime) -> float | None:
        powers = [r.total_power for r in self._readings if r.created_at >= since]
        if not powers:
            return None
        return sum(powers) / len(powers)
