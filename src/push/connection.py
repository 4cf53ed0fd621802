"""Client-side push channel with heartbeat replies and bounded auto-reconnect."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any

import structlog
import websockets

from src.core.config import PushConfig
from src.core.observers import Observer, ObserverList, Subscription
from src.core.types import ConnectionState, Envelope, MessageType
from src.push import protocol
from src.push.exceptions import ProtocolError

logger = structlog.stdlib.get_logger()

# Opens a transport for a URL. The returned object must support
# ``send(str)``, ``close()`` and async iteration over inbound frames.
Connector = Callable[[str], Awaitable[Any]]

MAX_ATTEMPTS_ERROR = "max reconnection attempts reached"


class ConnectionManager:
    """Owns one subscriber's push channel and its connection state.

    State machine::

        DISCONNECTED --connect()--> CONNECTING
        CONNECTING   --open ok----> CONNECTED      (attempts reset to 0)
        CONNECTING   --open fail--> RECONNECTING
        CONNECTED    --lost-------> RECONNECTING   (while auto-reconnect is on)
        CONNECTED    --disconnect-> DISCONNECTED
        RECONNECTING --delay------> CONNECTING     (attempts < max)
        RECONNECTING -------------> FAILED         (attempts == max)
        FAILED       --reconnect()> CONNECTING

    Inbound ``ping`` envelopes are answered with a ``pong`` straight away and
    never reach message observers. ``send_message`` outside CONNECTED logs a
    warning and drops the envelope; nothing is buffered.

    Only this object mutates its state; observers are told about every
    transition through :meth:`on_state_change`.
    """

    def __init__(
        self,
        url: str,
        reconnect_delay_ms: int = 3000,
        max_reconnect_attempts: int = 10,
        connector: Connector | None = None,
    ) -> None:
        if max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        self.url = url
        self._reconnect_delay = reconnect_delay_ms / 1000.0
        self._max_attempts = max_reconnect_attempts
        self._connector = connector

        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._last_error: str | None = None
        self._should_reconnect = False

        self._ws: Any = None
        self._session_task: asyncio.Task[None] | None = None
        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Future[Any]] = set()
        self._state_changed = asyncio.Event()

        self._messages: ObserverList[Envelope] = ObserverList("push_messages")
        self._states: ObserverList[ConnectionState] = ObserverList("push_states")

    @classmethod
    def from_config(cls, config: PushConfig, connector: Connector | None = None) -> ConnectionManager:
        return cls(
            url=config.ws_url,
            reconnect_delay_ms=config.reconnect_delay_ms,
            max_reconnect_attempts=config.max_reconnect_attempts,
            connector=connector,
        )

    # ── Properties ────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    # ── Observers ─────────────────────────────────────────────────

    def on_message(self, observer: Observer[Envelope]) -> Subscription:
        """Receive every inbound envelope except heartbeats."""
        return self._messages.subscribe(observer)

    def on_state_change(self, observer: Observer[ConnectionState]) -> Subscription:
        return self._states.subscribe(observer)

    # ── Public operations ─────────────────────────────────────────

    async def connect(self) -> None:
        """Open the channel unless it is already open, opening or FAILED."""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        if self._state == ConnectionState.RECONNECTING and self._reconnect_timer is not None:
            return
        if self._state == ConnectionState.FAILED:
            logger.warning("push_connect_after_failure", url=self.url, hint="call reconnect()")
            return
        self._should_reconnect = True
        self._begin_connect()

    async def disconnect(self) -> None:
        """Close the channel and stop any pending reconnect."""
        self._should_reconnect = False
        await self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self) -> None:
        """Reset the attempt counter and open a fresh channel.

        This is the only way out of FAILED.
        """
        self._should_reconnect = False
        await self._teardown()
        self._should_reconnect = True
        self._attempts = 0
        self._last_error = None
        self._begin_connect()

    async def send_message(self, envelope: Envelope) -> bool:
        """Send an envelope if connected. Never raises, never queues."""
        ws = self._ws
        if self._state != ConnectionState.CONNECTED or ws is None:
            logger.warning(
                "push_send_dropped",
                message_type=envelope.type,
                state=self._state,
            )
            return False
        try:
            await ws.send(protocol.encode(envelope))
        except Exception:
            logger.error("push_send_failed", message_type=envelope.type, exc_info=True)
            return False
        return True

    async def wait_for_state(
        self, *states: ConnectionState, timeout: float | None = None
    ) -> ConnectionState:
        """Block until the state is one of *states*."""

        async def _wait() -> ConnectionState:
            while self._state not in states:
                await self._state_changed.wait()
            return self._state

        return await asyncio.wait_for(_wait(), timeout=timeout)

    # ── State machine internals ───────────────────────────────────

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        logger.info(
            "push_state_changed",
            url=self.url,
            previous=previous,
            state=state,
            attempts=self._attempts,
        )
        changed, self._state_changed = self._state_changed, asyncio.Event()
        changed.set()
        self._states.notify_nowait(state)

    def _begin_connect(self) -> None:
        self._reconnect_timer = None
        self._set_state(ConnectionState.CONNECTING)
        self._session_task = asyncio.create_task(self._session())

    async def _open(self) -> Any:
        if self._connector is not None:
            return await self._connector(self.url)
        return await websockets.connect(self.url)

    async def _open_shielded(self) -> Any:
        # A cancelled caller must not strand a transport that still finishes opening.
        opening = asyncio.ensure_future(self._open())
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            self._pending.add(opening)
            opening.add_done_callback(self._close_abandoned)
            raise

    def _close_abandoned(self, opening: asyncio.Future[Any]) -> None:
        self._pending.discard(opening)
        if opening.cancelled() or opening.exception() is not None:
            return
        logger.info("push_close_abandoned", url=self.url)
        closing = asyncio.ensure_future(self._close_quietly(opening.result()))
        self._pending.add(closing)
        closing.add_done_callback(self._pending.discard)

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception:
            logger.debug("push_close_error", exc_info=True)

    async def _session(self) -> None:
        try:
            ws = await self._open_shielded()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._transport_lost(f"connect failed: {exc}")
            return

        self._ws = ws
        self._attempts = 0
        self._last_error = None
        self._set_state(ConnectionState.CONNECTED)

        reason = "connection closed"
        try:
            async for raw in ws:
                await self._handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = f"connection lost: {exc}"
        finally:
            self._ws = None
            await self._close_quietly(ws)

        self._transport_lost(reason)

    def _transport_lost(self, reason: str) -> None:
        self._last_error = reason
        if not self._should_reconnect:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._attempts += 1
        self._set_state(ConnectionState.RECONNECTING)
        if self._attempts >= self._max_attempts:
            self._last_error = MAX_ATTEMPTS_ERROR
            logger.error(
                "push_reconnect_exhausted",
                url=self.url,
                attempts=self._attempts,
                reason=reason,
            )
            self._set_state(ConnectionState.FAILED)
            return

        logger.warning(
            "push_reconnecting",
            url=self.url,
            attempt=self._attempts,
            max_attempts=self._max_attempts,
            delay=self._reconnect_delay,
            reason=reason,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(self._reconnect_delay, self._begin_connect)

    async def _teardown(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_quietly(ws)

        task, self._session_task = self._session_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _handle_raw(self, raw: str | bytes) -> None:
        try:
            envelope = protocol.decode(raw)
        except ProtocolError as exc:
            logger.error("push_message_malformed", error=str(exc), raw=str(raw)[:200])
            return

        if envelope.type == MessageType.PING:
            await self._reply_pong(envelope)
            return
        await self._messages.notify(envelope)

    async def _reply_pong(self, ping: Envelope) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(protocol.encode(protocol.pong(ping)))
        except Exception:
            logger.error("push_pong_failed", exc_info=True)

    # ── Context manager ───────────────────────────────────────────

    async def __aenter__(self) -> ConnectionManager:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.disconnect()
