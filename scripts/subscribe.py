#!/usr/bin/env python3
"""Push channel client — connects, prints every envelope, reconnects on loss.

Usage::

    python scripts/subscribe.py
    python scripts/subscribe.py --url ws://homeserver:3001/ws --ping-interval 10
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from src.core.config import load_settings
from src.core.logging import setup_logging
from src.core.types import ConnectionState, Envelope, MessageType
from src.push import protocol
from src.push.connection import MAX_ATTEMPTS_ERROR, ConnectionManager

logger = structlog.get_logger(__name__)


def render_envelope(envelope: Envelope) -> str:
    """One-line human summary of an envelope."""
    data = envelope.data if isinstance(envelope.data, dict) else {}
    if envelope.type == MessageType.ENERGY_UPDATE:
        reading = data.get("reading", {})
        circuits = data.get("circuits", [])
        hot = [c["circuit_id"] for c in circuits if c.get("status") != "normal"]
        line = (
            f"{reading.get('timestamp', '?')}  "
            f"{reading.get('total_power', 0):7.0f} W  "
            f"{reading.get('voltage', 0):5.1f} V  "
            f"today {reading.get('daily_usage', 0):.2f} kWh"
        )
        if hot:
            line += f"  [{', '.join(hot)}]"
        return line
    if envelope.type == MessageType.ENERGY_ALERT:
        return f"ALERT {data.get('severity', '?').upper()}: {data.get('message', '')}"
    return f"{envelope.type}: {envelope.data}"


async def run(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    setup_logging(level=args.log_level, fmt="console")

    manager = ConnectionManager(
        url=args.url or settings.push.ws_url,
        reconnect_delay_ms=settings.push.reconnect_delay_ms,
        max_reconnect_attempts=settings.push.max_reconnect_attempts,
    )
    manager.on_message(lambda env: print(render_envelope(env), flush=True))

    stop_event = asyncio.Event()

    def _on_state(state: ConnectionState) -> None:
        if state == ConnectionState.FAILED:
            print(f"giving up: {manager.last_error}", file=sys.stderr)
            stop_event.set()

    manager.on_state_change(_on_state)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    async def _pinger() -> None:
        while True:
            await asyncio.sleep(args.ping_interval)
            await manager.send_message(protocol.ping())

    await manager.connect()
    ping_task = asyncio.create_task(_pinger()) if args.ping_interval > 0 else None
    try:
        await stop_event.wait()
    finally:
        if ping_task is not None:
            ping_task.cancel()
        await manager.disconnect()

    logger.info("subscriber_stopped", state=manager.state, last_error=manager.last_error)
    return 1 if manager.last_error == MAX_ATTEMPTS_ERROR else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Print live energy updates.")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    parser.add_argument("--url", default=None, help="WebSocket URL override")
    parser.add_argument("--log-level", default=None, help="Log level override")
    parser.add_argument(
        "--ping-interval",
        type=float,
        default=0.0,
        help="Send a client heartbeat every N seconds (0 disables)",
    )
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
