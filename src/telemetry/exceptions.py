"""Exception hierarchy for the telemetry pipeline."""

from __future__ import annotations


class TelemetryError(Exception):
    """Base exception for all telemetry errors."""


class SamplingError(TelemetryError):
    """Failed to produce a reading for the current tick."""


class SamplerBusyError(SamplingError):
    """A tick was requested while the previous one is still running."""
