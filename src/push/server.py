"""aiohttp server for the push channel and the energy query API.

Exposes:
- ``GET  /ws``                                  → WebSocket push channel
- ``GET  /api/energy/current``                  → latest reading + circuits
- ``GET  /api/energy/history?hours=24``         → usage history
- ``GET  /api/energy/alerts``                   → unacknowledged alerts
- ``POST /api/energy/alerts/{id}/acknowledge``  → acknowledge one alert
- ``GET  /api/energy/status``                   → pipeline status
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import structlog
from aiohttp import WSMsgType, web

from src.core.types import TickResult, iso_now
from src.push import protocol
from src.push.broadcaster import Broadcaster, Subscriber
from src.storage.exceptions import StorageError
from src.telemetry.ticker import Ticker

if TYPE_CHECKING:
    from src.telemetry.service import TelemetryService

logger = structlog.stdlib.get_logger()

_DEFAULT_HISTORY_HOURS = 24.0


class WebSocketSubscriber(Subscriber):
    """Adapts an aiohttp ``WebSocketResponse`` to the Subscriber interface."""

    def __init__(self, ws: web.WebSocketResponse, remote: str | None = None) -> None:
        self._ws = ws
        self._remote = remote or "unknown"

    @property
    def is_open(self) -> bool:
        return not self._ws.closed

    @property
    def label(self) -> str:
        return f"ws:{self._remote}"

    async def send_text(self, text: str) -> None:
        await self._ws.send_str(text)

    async def close(self) -> None:
        await self._ws.close()


def _ok(data: Any, status: int = 200) -> web.Response:
    return web.json_response({"success": True, "data": data}, status=status)


def _fail(error: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": error}, status=status)


def _parse_hours(raw: str | None) -> float:
    if not raw:
        return _DEFAULT_HISTORY_HOURS
    try:
        hours = float(raw)
    except ValueError:
        return _DEFAULT_HISTORY_HOURS
    return hours if hours > 0 else _DEFAULT_HISTORY_HOURS


# ── WebSocket ────────────────────────────────────────────────────


async def _handle_ws(request: web.Request) -> web.WebSocketResponse:
    broadcaster: Broadcaster = request.app["broadcaster"]
    service: TelemetryService = request.app["service"]

    ws = web.WebSocketResponse()
    await ws.prepare(request)

    subscriber = WebSocketSubscriber(ws, request.remote)
    subscription = broadcaster.subscribe(subscriber)
    logger.info(
        "push_client_connected",
        remote=request.remote,
        clients=broadcaster.subscriber_count,
    )

    # Bring the new client up to date with the last stored tick.
    reading = await service.latest_reading()
    if reading is not None:
        circuits = await service.latest_circuit_readings()
        snapshot = TickResult(reading=reading, circuits=circuits)
        broadcaster.send_to(subscriber, protocol.energy_update(snapshot))

    try:
        async for msg in ws:
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                await broadcaster.handle_inbound(subscriber, msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.warning(
                    "push_client_error",
                    remote=request.remote,
                    error=str(ws.exception()),
                )
    finally:
        subscription.cancel()
        logger.info(
            "push_client_disconnected",
            remote=request.remote,
            clients=broadcaster.subscriber_count,
        )
    return ws


# ── Query API ────────────────────────────────────────────────────


async def _handle_current(request: web.Request) -> web.Response:
    service: TelemetryService = request.app["service"]
    reading = await service.latest_reading()
    if reading is None:
        return _fail("No energy readings available", 404)
    circuits = await service.latest_circuit_readings()
    return _ok({
        "reading": reading.model_dump(mode="json"),
        "circuits": [c.model_dump(mode="json") for c in circuits],
        "timestamp": iso_now(),
    })


async def _handle_history(request: web.Request) -> web.Response:
    service: TelemetryService = request.app["service"]
    hours = _parse_hours(request.query.get("hours"))
    history = await service.usage_history(hours)
    return _ok({
        "history": [r.model_dump(mode="json") for r in history],
        "count": len(history),
        "hours": hours,
    })


async def _handle_alerts(request: web.Request) -> web.Response:
    service: TelemetryService = request.app["service"]
    alerts = await service.active_alerts()
    return _ok({
        "alerts": [a.model_dump(mode="json") for a in alerts],
        "count": len(alerts),
    })


async def _handle_acknowledge(request: web.Request) -> web.Response:
    service: TelemetryService = request.app["service"]
    alert_id = request.match_info["alert_id"]
    try:
        found = await service.acknowledge_alert(alert_id)
    except StorageError as exc:
        logger.error("acknowledge_failed", alert_id=alert_id, error=str(exc))
        return _fail(str(exc), 500)
    if not found:
        return _fail(f"Alert not found: {alert_id}", 404)
    return _ok({"alert_id": alert_id, "acknowledged": True})


async def _handle_status(request: web.Request) -> web.Response:
    service: TelemetryService = request.app["service"]
    return _ok(service.status())


# ── App wiring ───────────────────────────────────────────────────


async def _heartbeat_ctx(app: web.Application) -> AsyncIterator[None]:
    """Ping every client periodically; close all subscribers on shutdown."""
    broadcaster: Broadcaster = app["broadcaster"]

    async def _beat() -> None:
        broadcaster.heartbeat()

    ticker = Ticker(app["heartbeat_interval_secs"], _beat, name="push_heartbeat")
    ticker.start()
    yield
    await ticker.stop()
    await broadcaster.close()


def create_push_app(
    service: TelemetryService,
    broadcaster: Broadcaster,
    path: str = "/ws",
    heartbeat_interval_secs: float = 30.0,
) -> web.Application:
    """Create the aiohttp application."""
    app = web.Application()
    app["service"] = service
    app["broadcaster"] = broadcaster
    app["heartbeat_interval_secs"] = heartbeat_interval_secs
    app.router.add_get(path, _handle_ws)
    app.router.add_get("/api/energy/current", _handle_current)
    app.router.add_get("/api/energy/history", _handle_history)
    app.router.add_get("/api/energy/alerts", _handle_alerts)
    app.router.add_post("/api/energy/alerts/{alert_id}/acknowledge", _handle_acknowledge)
    app.router.add_get("/api/energy/status", _handle_status)
    app.cleanup_ctx.append(_heartbeat_ctx)
    return app


async def start_push_server(
    service: TelemetryService,
    broadcaster: Broadcaster,
    host: str = "0.0.0.0",
    port: int = 3001,
    path: str = "/ws",
    heartbeat_interval_secs: float = 30.0,
) -> web.AppRunner:
    """Start the push server. Returns the runner for cleanup."""
    app = create_push_app(
        service,
        broadcaster,
        path=path,
        heartbeat_interval_secs=heartbeat_interval_secs,
    )
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("push_server_started", host=host, port=port, path=path)
    return runner
