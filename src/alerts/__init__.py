"""Alert evaluation for meter readings."""

from src.alerts.engine import AlertEngine

__all__ = ["AlertEngine"]
