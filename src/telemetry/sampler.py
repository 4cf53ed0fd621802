"""Simulated household meter — one aggregate reading plus circuit breakdown per tick."""

from __future__ import annotations

import datetime
import math
import random
from collections.abc import Callable

import structlog

from src.core.config import CircuitConfig, SamplerConfig, get_settings
from src.core.types import CircuitReading, CircuitStatus, Reading, utc_now
from src.storage.gateway import PersistenceGateway
from src.telemetry.exceptions import SamplerBusyError

logger = structlog.stdlib.get_logger()

Clock = Callable[[], datetime.datetime]

_MIN_STEP = datetime.timedelta(microseconds=1)


def _start_of_day(now: datetime.datetime) -> datetime.datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _start_of_month(now: datetime.datetime) -> datetime.datetime:
    return _start_of_day(now).replace(day=1)


def _hours_between(start: datetime.datetime, end: datetime.datetime) -> float:
    return max((end - start).total_seconds(), 0.0) / 3600.0


class Sampler:
    """Produces one :class:`Reading` and its circuit breakdown per tick.

    Power follows a daily sinusoid peaking at local mid-day on top of a base
    load, with bounded random noise. Voltage, frequency and power factor are
    drawn inside fixed bands around nominal values.

    Daily and monthly usage come from the gateway's average power over the
    elapsed window. Days and months start at midnight in *tz*, the system
    time zone when None. When that query fails or finds nothing, the
    sampler falls back to a time-weighted local estimate: the running mean
    of every power value it has produced, multiplied by the elapsed hours.

    ``tick()`` is not re-entrant; calling it while a tick is in flight
    raises :class:`SamplerBusyError`.
    """

    def __init__(
        self,
        config: SamplerConfig | None = None,
        circuits: list[CircuitConfig] | None = None,
        gateway: PersistenceGateway | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
        tz: datetime.tzinfo | None = None,
    ) -> None:
        self._config = config or SamplerConfig()
        self._circuits = circuits if circuits is not None else get_settings().circuits
        self._gateway = gateway
        self._clock = clock
        self._rng = rng or random.Random()
        self._tz = tz
        self._last_timestamp: datetime.datetime | None = None
        self._power_sum = 0.0
        self._power_count = 0
        self._busy = False

    @property
    def circuits(self) -> list[CircuitConfig]:
        return list(self._circuits)

    @property
    def local_average_power(self) -> float:
        """Running mean of every total power value produced so far."""
        if self._power_count == 0:
            return 0.0
        return self._power_sum / self._power_count

    async def tick(self) -> tuple[Reading, list[CircuitReading]]:
        if self._busy:
            raise SamplerBusyError("tick already in progress")
        self._busy = True
        try:
            return await self._sample()
        finally:
            self._busy = False

    async def _sample(self) -> tuple[Reading, list[CircuitReading]]:
        cfg = self._config
        now = self._next_timestamp()

        total_power = self._total_power(now)
        voltage = self._draw(cfg.voltage_nominal, cfg.voltage_band)
        frequency = self._draw(cfg.frequency_nominal, cfg.frequency_band)
        power_factor = min(
            max(self._rng.uniform(cfg.power_factor_min, cfg.power_factor_max), 0.0),
            1.0,
        )
        current = total_power / voltage if voltage else 0.0

        self._power_sum += total_power
        self._power_count += 1

        local = self._local(now)
        daily_usage = await self._usage_since(_start_of_day(local), now, "daily")
        monthly_usage = await self._usage_since(_start_of_month(local), now, "monthly")

        reading_id = f"reading_{int(now.timestamp() * 1_000_000)}"
        reading = Reading(
            id=reading_id,
            timestamp=now,
            total_power=total_power,
            voltage=voltage,
            current=current,
            frequency=frequency,
            power_factor=power_factor,
            daily_usage=daily_usage,
            monthly_usage=monthly_usage,
            cost_today=daily_usage * cfg.electricity_rate,
            cost_month=monthly_usage * cfg.electricity_rate,
            created_at=now,
        )
        return reading, self.breakdown(reading)

    def breakdown(self, reading: Reading) -> list[CircuitReading]:
        """Apportion a reading's power across the configured circuits."""
        suffix = reading.id.removeprefix("reading_")
        readings: list[CircuitReading] = []
        for circuit in self._circuits:
            share = circuit.share
            if circuit.noise > 0:
                share += self._rng.uniform(-circuit.noise, circuit.noise)
            power = max(reading.total_power * share, 0.0)
            voltage = reading.voltage / 2 if circuit.split_phase else reading.voltage
            percentage = min(max(power / circuit.capacity_w * 100.0, 0.0), 100.0)
            readings.append(CircuitReading(
                id=f"circuit_{circuit.id}_{suffix}",
                circuit_id=circuit.id,
                circuit_name=circuit.name,
                power=power,
                voltage=voltage,
                current=power / voltage if voltage else 0.0,
                percentage=percentage,
                status=CircuitStatus.from_percentage(percentage),
                timestamp=reading.timestamp,
            ))
        return readings

    # ── Internals ────────────────────────────────────────────────

    def _next_timestamp(self) -> datetime.datetime:
        now = self._clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + _MIN_STEP
        self._last_timestamp = now
        return now

    def _local(self, now: datetime.datetime) -> datetime.datetime:
        # None means the system time zone.
        return now.astimezone(self._tz)

    def _total_power(self, now: datetime.datetime) -> float:
        cfg = self._config
        local = self._local(now)
        hour = local.hour + local.minute / 60 + local.second / 3600
        # Period of 24h, crest at 12:00.
        variation = math.sin(2 * math.pi * (hour - 6) / 24) * cfg.variable_load_w
        noise = self._rng.random() * cfg.noise_w
        return max(cfg.base_load_w + variation + noise, 0.0)

    def _draw(self, nominal: float, band: float) -> float:
        return nominal + self._rng.uniform(-band, band)

    async def _usage_since(
        self, since: datetime.datetime, now: datetime.datetime, window: str
    ) -> float:
        """Energy in kWh consumed between *since* and *now*."""
        hours = _hours_between(since, now)
        average: float | None = None
        if self._gateway is not None:
            try:
                average = await self._gateway.query_average_power(since)
            except Exception:
                logger.warning("usage_query_failed", window=window, exc_info=True)
        if average is None:
            average = self.local_average_power
        return average * hours / 1000.0
