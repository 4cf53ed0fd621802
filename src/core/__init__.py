"""Core module — config, types, logging."""

from src.core.config import Settings, get_settings, load_settings, reset_settings
from src.core.logging import setup_logging
from src.core.types import (
    Alert,
    AlertSeverity,
    AlertType,
    CircuitReading,
    CircuitStatus,
    ConnectionState,
    Envelope,
    MessageType,
    Reading,
    TickResult,
)

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertType",
    "CircuitReading",
    "CircuitStatus",
    "ConnectionState",
    "Envelope",
    "MessageType",
    "Reading",
    "Settings",
    "TickResult",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
