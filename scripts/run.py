#!/usr/bin/env python3
"""Main entrypoint — wires the telemetry pipeline and serves the push channel.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config file
    python scripts/run.py --config config/settings.yaml

    # Override log level and port
    python scripts/run.py --log-level DEBUG --port 3002
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from src.alerts.engine import AlertEngine
from src.core.config import load_settings
from src.core.logging import setup_logging
from src.push.broadcaster import Broadcaster
from src.push.server import start_push_server
from src.storage.exceptions import StorageError
from src.storage.factory import create_gateway
from src.telemetry.sampler import Sampler
from src.telemetry.service import TelemetryService

logger = structlog.get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    """Start all components and run until interrupted."""
    settings = load_settings(args.config)
    setup_logging(level=args.log_level)

    host = args.host or settings.push.host
    port = args.port or settings.push.port

    logger.info(
        "pipeline_starting",
        storage=settings.storage.backend,
        circuits=[c.id for c in settings.circuits],
        period_ms=settings.sampler.period_ms,
    )

    # ── Storage ──────────────────────────────────────────────────
    gateway = create_gateway(settings.storage)
    try:
        await gateway.open()
    except StorageError:
        logger.exception("storage_open_failed", backend=settings.storage.backend)
        return 1

    # ── Pipeline ─────────────────────────────────────────────────
    broadcaster = Broadcaster(queue_size=settings.push.outbound_queue_size)
    sampler = Sampler(
        config=settings.sampler,
        circuits=settings.circuits,
        gateway=gateway,
    )
    service = TelemetryService(
        sampler=sampler,
        engine=AlertEngine(settings.alerts),
        gateway=gateway,
        broadcaster=broadcaster,
        period_ms=settings.sampler.period_ms,
    )

    # ── Push server ──────────────────────────────────────────────
    runner = await start_push_server(
        service,
        broadcaster,
        host=host,
        port=port,
        path=settings.push.path,
        heartbeat_interval_secs=settings.push.heartbeat_interval_secs,
    )

    await service.start()
    logger.info("pipeline_running", host=host, port=port)

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("pipeline_shutting_down")

    await service.stop()
    await runner.cleanup()
    try:
        await gateway.close()
    except Exception:
        logger.exception("storage_close_error")

    logger.info("pipeline_stopped", **service.status())
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the household energy telemetry pipeline.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level override: DEBUG, INFO, WARNING, ERROR",
    )
    parser.add_argument("--host", default=None, help="Bind address override")
    parser.add_argument("--port", type=int, default=None, help="Port override")
    args = parser.parse_args()

    code = asyncio.run(run(args))
    sys.exit(code)


if __name__ == "__main__":
    main()
