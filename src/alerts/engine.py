"""Threshold-based alert evaluation for meter readings."""

from __future__ import annotations

from src.core.config import AlertThresholdConfig
from src.core.types import (
    Alert,
    AlertSeverity,
    AlertType,
    CircuitReading,
    CircuitStatus,
    Reading,
)


class AlertEngine:
    """Evaluates a reading and its circuit breakdown against fixed thresholds.

    Rules are independent and all applicable rules fire on the same tick.
    There is no suppression across ticks: a condition that persists raises
    a fresh alert every time it is evaluated, keeping alert history
    continuous.

    ``evaluate`` holds no state between calls; alert ids are derived from the
    reading id so identical inputs always produce identical alerts.
    """

    def __init__(self, config: AlertThresholdConfig | None = None) -> None:
        self._config = config or AlertThresholdConfig()

    @property
    def config(self) -> AlertThresholdConfig:
        return self._config

    def evaluate(self, reading: Reading, circuits: list[CircuitReading]) -> list[Alert]:
        alerts: list[Alert] = []

        high_usage = self._check_high_usage(reading)
        if high_usage is not None:
            alerts.append(high_usage)

        voltage = self._check_voltage(reading)
        if voltage is not None:
            alerts.append(voltage)

        alerts.extend(self._check_circuits(reading, circuits))
        return alerts

    # ── Rules ────────────────────────────────────────────────────

    def _check_high_usage(self, reading: Reading) -> Alert | None:
        cfg = self._config
        if reading.total_power <= cfg.high_usage_w:
            return None
        severity = (
            AlertSeverity.HIGH
            if reading.total_power > cfg.high_usage_severe_w
            else AlertSeverity.MEDIUM
        )
        return Alert(
            id=f"alert_{reading.id}_high_usage",
            type=AlertType.HIGH_USAGE,
            severity=severity,
            message=f"High power usage detected: {reading.total_power:.0f}W",
            value=reading.total_power,
            threshold=cfg.high_usage_w,
            timestamp=reading.timestamp,
        )

    def _check_voltage(self, reading: Reading) -> Alert | None:
        cfg = self._config
        if reading.voltage < cfg.voltage_low:
            threshold = cfg.voltage_low
        elif reading.voltage > cfg.voltage_high:
            threshold = cfg.voltage_high
        else:
            return None
        return Alert(
            id=f"alert_{reading.id}_voltage",
            type=AlertType.VOLTAGE_ANOMALY,
            severity=AlertSeverity.MEDIUM,
            message=f"Voltage anomaly detected: {reading.voltage:.1f}V",
            value=reading.voltage,
            threshold=threshold,
            timestamp=reading.timestamp,
        )

    def _check_circuits(
        self, reading: Reading, circuits: list[CircuitReading]
    ) -> list[Alert]:
        alerts: list[Alert] = []
        for circuit in circuits:
            if circuit.status != CircuitStatus.CRITICAL:
                continue
            name = circuit.circuit_name or circuit.circuit_id
            alerts.append(Alert(
                id=f"alert_{reading.id}_circuit_{circuit.circuit_id}",
                type=AlertType.CIRCUIT_OVERLOAD,
                severity=AlertSeverity.HIGH,
                message=f"Circuit overload: {name} at {circuit.percentage:.0f}%",
                circuit_id=circuit.circuit_id,
                value=circuit.percentage,
                threshold=self._config.circuit_critical_pct,
                timestamp=reading.timestamp,
            ))
        return alerts
