"""Telemetry pipeline — sampling, ticking and orchestration."""

from src.telemetry.exceptions import SamplerBusyError, SamplingError, TelemetryError
from src.telemetry.sampler import Sampler
from src.telemetry.service import TelemetryService
from src.telemetry.ticker import Ticker

__all__ = [
    "Sampler",
    "SamplerBusyError",
    "SamplingError",
    "TelemetryError",
    "TelemetryService",
    "Ticker",
]
