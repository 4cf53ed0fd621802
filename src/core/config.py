"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class CircuitConfig(BaseModel):
    """A named circuit on the household panel.

    ``share`` is the fraction of total power attributed to the circuit and
    ``noise`` the maximum random deviation applied to that fraction.
    Branch circuits run split-phase at half the mains voltage.
    """

    id: str
    name: str
    capacity_w: float = Field(gt=0)
    share: float = Field(default=0.0, ge=0.0)
    noise: float = Field(default=0.0, ge=0.0)
    split_phase: bool = True


def _default_circuits() -> list[CircuitConfig]:
    return [
        CircuitConfig(id="main", name="Main Panel", capacity_w=5000, share=1.0, split_phase=False),
        CircuitConfig(id="hvac", name="HVAC System", capacity_w=3000, share=0.5, noise=0.1),
        CircuitConfig(id="kitchen", name="Kitchen", capacity_w=2000, share=0.2, noise=0.08),
        CircuitConfig(id="living", name="Living Room", capacity_w=1500, share=0.12, noise=0.05),
        CircuitConfig(id="bedrooms", name="Bedrooms", capacity_w=1000, share=0.09, noise=0.04),
        CircuitConfig(id="garage", name="Garage", capacity_w=800, share=0.04, noise=0.03),
    ]


class SamplerConfig(BaseModel):
    """Simulated meter sampling configuration."""

    period_ms: int = Field(default=5000, gt=0)
    base_load_w: float = 2000.0
    variable_load_w: float = 1500.0
    noise_w: float = 500.0
    voltage_nominal: float = 240.0
    voltage_band: float = 5.0
    frequency_nominal: float = 60.0
    frequency_band: float = 0.1
    power_factor_min: float = 0.85
    power_factor_max: float = 0.95
    electricity_rate: float = 0.12  # currency per kWh


class AlertThresholdConfig(BaseModel):
    """Fixed alerting thresholds."""

    high_usage_w: float = 4000.0
    high_usage_severe_w: float = 4500.0
    voltage_low: float = 230.0
    voltage_high: float = 250.0
    circuit_critical_pct: float = 90.0


class PushConfig(BaseModel):
    """Push channel (WebSocket) server and client configuration."""

    host: str = "0.0.0.0"
    port: int = 3001
    path: str = "/ws"
    ws_url: str = "ws://localhost:3001/ws"
    heartbeat_interval_secs: float = 30.0
    outbound_queue_size: int = Field(default=100, gt=0)
    reconnect_delay_ms: int = Field(default=3000, ge=0)
    max_reconnect_attempts: int = Field(default=10, gt=0)


class StorageConfig(BaseModel):
    """Persistence backend selection."""

    backend: str = "memory"  # "memory" or "sql"
    url: str = "sqlite:///data/energy.db"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"


class Settings(BaseModel):
    """Root settings container."""

    sampler: SamplerConfig = SamplerConfig()
    circuits: list[CircuitConfig] = Field(default_factory=_default_circuits)
    alerts: AlertThresholdConfig = AlertThresholdConfig()
    push: PushConfig = PushConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
