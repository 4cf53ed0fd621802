"""Domain types for the energy telemetry pipeline."""

from __future__ import annotations

import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def iso_now() -> str:
    return utc_now().isoformat()


# ── Readings ─────────────────────────────────────────────────────


class CircuitStatus(StrEnum):
    """Load status of a circuit, derived from its capacity percentage."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"

    @classmethod
    def from_percentage(cls, percentage: float) -> CircuitStatus:
        if percentage >= 90:
            return cls.CRITICAL
        if percentage >= 75:
            return cls.WARNING
        return cls.NORMAL


class Reading(BaseModel):
    """Aggregate meter snapshot for one tick."""

    id: str
    timestamp: datetime.datetime
    total_power: float  # W
    voltage: float  # V
    current: float  # A
    frequency: float  # Hz
    power_factor: float = Field(ge=0.0, le=1.0)
    daily_usage: float = 0.0  # kWh
    monthly_usage: float = 0.0  # kWh
    cost_today: float = 0.0
    cost_month: float = 0.0
    created_at: datetime.datetime = Field(default_factory=utc_now)


class CircuitReading(BaseModel):
    """Per-circuit breakdown of a Reading."""

    id: str
    circuit_id: str
    circuit_name: str = ""
    power: float
    voltage: float
    current: float
    percentage: float = Field(ge=0.0, le=100.0)
    status: CircuitStatus
    timestamp: datetime.datetime


class TickResult(BaseModel):
    """Everything one sampling tick produced."""

    reading: Reading
    circuits: list[CircuitReading] = Field(default_factory=list)
    alerts: list[Alert] = Field(default_factory=list)


# ── Alerts ───────────────────────────────────────────────────────


class AlertType(StrEnum):
    HIGH_USAGE = "high_usage"
    VOLTAGE_ANOMALY = "voltage_anomaly"
    CIRCUIT_OVERLOAD = "circuit_overload"
    POWER_OUTAGE = "power_outage"


class AlertSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Alert(BaseModel):
    """Threshold breach raised against a Reading or one of its circuits."""

    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    circuit_id: str | None = None
    value: float
    threshold: float
    timestamp: datetime.datetime
    acknowledged: bool = False


# ── Push channel ─────────────────────────────────────────────────


class MessageType(StrEnum):
    """Envelope tags understood on the push channel."""

    ENERGY_UPDATE = "energy_update"
    ENERGY_ALERT = "energy_alert"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    SYSTEM_STATUS = "system_status"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"


class Envelope(BaseModel):
    """Tagged wire message used for data pushes and heartbeats alike."""

    type: MessageType
    data: Any = None
    timestamp: str = Field(default_factory=iso_now)
    id: str | None = None


class ConnectionState(StrEnum):
    """Client-side push channel connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


TickResult.model_rebuild()
