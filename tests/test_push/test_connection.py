"""Tests for ConnectionManager — state machine, heartbeat replies, reconnect limit."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.core.config import PushConfig
from src.core.types import ConnectionState, Envelope, MessageType
from src.push import protocol
from src.push.connection import MAX_ATTEMPTS_ERROR, ConnectionManager

_URL = "ws://test.local:3001/ws"

# ── Helpers ─────────────────────────────────────────────────────


class FakeSocket:
    """Open transport fed by the test; iteration ends when either side closes."""

    def __init__(self, messages: list[str] | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()
        for msg in messages or []:
            self._inbox.put_nowait(msg)

    def feed(self, raw: str) -> None:
        self._inbox.put_nowait(raw)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._inbox.put_nowait(None)

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(text))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> str:
        raw = await self._inbox.get()
        if raw is None:
            raise StopAsyncIteration
        return raw


class _AsyncIterator:
    """Async iterator over a list of messages."""

    def __init__(self, messages: list[str]) -> None:
        self._messages = list(messages)
        self._index = 0

    def __aiter__(self) -> _AsyncIterator:
        return self

    async def __anext__(self) -> str:
        if self._index >= len(self._messages):
            raise StopAsyncIteration
        msg = self._messages[self._index]
        self._index += 1
        return msg


def _make_mock_ws(messages: list[str]) -> MagicMock:
    """Create a mock WebSocket that yields messages then closes."""
    ws = MagicMock()
    ws.send = AsyncMock()
    ws.close = AsyncMock()
    ws.__aiter__ = MagicMock(return_value=_AsyncIterator(messages))
    return ws


def _connector(*sockets: FakeSocket, fail: int = 0) -> AsyncMock:
    """Connector that fails *fail* times, then hands out *sockets* in order."""
    remaining = list(sockets)
    failures = fail

    async def _open(url: str) -> FakeSocket:
        nonlocal failures
        if failures > 0:
            failures -= 1
            raise ConnectionRefusedError("connection refused")
        if not remaining:
            raise ConnectionRefusedError("no more sockets")
        return remaining.pop(0)

    return AsyncMock(side_effect=_open)


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


def _manager(connector: AsyncMock, delay_ms: int = 0, max_attempts: int = 10) -> ConnectionManager:
    return ConnectionManager(
        _URL,
        reconnect_delay_ms=delay_ms,
        max_reconnect_attempts=max_attempts,
        connector=connector,
    )


# ── Construction ────────────────────────────────────────────────


class TestConstruction:
    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            ConnectionManager(_URL, max_reconnect_attempts=0)

    def test_from_config(self) -> None:
        cfg = PushConfig(ws_url=_URL, reconnect_delay_ms=250, max_reconnect_attempts=3)
        manager = ConnectionManager.from_config(cfg)
        assert manager.url == _URL
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.attempts == 0
        assert manager.last_error is None


# ── Connect / disconnect ────────────────────────────────────────


class TestLifecycle:
    async def test_connect_reaches_connected(self) -> None:
        sock = FakeSocket()
        manager = _manager(_connector(sock))
        states: list[ConnectionState] = []
        manager.on_state_change(states.append)

        await manager.connect()
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)
        assert manager.is_connected
        await manager.disconnect()

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]
        assert sock.closed

    async def test_uses_websockets_connect_by_default(self) -> None:
        sock = FakeSocket()
        connect_mock = AsyncMock(return_value=sock)
        with patch("src.push.connection.websockets.connect", connect_mock):
            async with ConnectionManager(_URL) as manager:
                await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)
        connect_mock.assert_awaited_once_with(_URL)
        assert manager.state == ConnectionState.DISCONNECTED

    async def test_connect_while_connected_is_noop(self) -> None:
        connector = _connector(FakeSocket(), FakeSocket())
        manager = _manager(connector)
        await manager.connect()
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)
        await manager.connect()
        await asyncio.sleep(0.01)
        assert connector.await_count == 1
        await manager.disconnect()

    async def test_disconnect_does_not_reconnect(self) -> None:
        connector = _connector(FakeSocket(), FakeSocket())
        manager = _manager(connector)
        await manager.connect()
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)
        await manager.disconnect()
        await asyncio.sleep(0.02)
        assert manager.state == ConnectionState.DISCONNECTED
        assert connector.await_count == 1

    async def test_disconnect_while_connecting_closes_late_socket(self) -> None:
        sock = FakeSocket()
        opened = asyncio.Event()

        async def _slow_open(url: str) -> FakeSocket:
            await opened.wait()
            return sock

        connector = AsyncMock(side_effect=_slow_open)
        manager = _manager(connector)
        await manager.connect()
        await _until(lambda: connector.await_count == 1)
        assert manager.state == ConnectionState.CONNECTING

        await manager.disconnect()
        opened.set()
        await _until(lambda: sock.closed)

        assert manager.state == ConnectionState.DISCONNECTED
        assert not manager.is_connected
        assert connector.await_count == 1


# ── Messages ────────────────────────────────────────────────────


class TestMessages:
    async def test_ping_answered_and_not_forwarded(self) -> None:
        sock = FakeSocket()
        manager = _manager(_connector(sock))
        received: list[Envelope] = []
        manager.on_message(received.append)

        await manager.connect()
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)
        sock.feed(protocol.encode(protocol.ping("hb-5")))
        sock.feed(protocol.encode(protocol.event(MessageType.SYSTEM_STATUS, {"ok": True})))
        await _until(lambda: len(received) == 1)

        assert sock.sent[0]["type"] == "pong"
        assert sock.sent[0]["id"] == "hb-5"
        assert [env.type for env in received] == [MessageType.SYSTEM_STATUS]
        await manager.disconnect()

    async def test_ping_answered_on_mock_ws(self) -> None:
        mock_ws = _make_mock_ws([protocol.encode(protocol.ping("hb-1"))])
        manager = _manager(AsyncMock(return_value=mock_ws), delay_ms=60_000)

        await manager.connect()
        await _until(lambda: mock_ws.send.await_count == 1)

        sent = json.loads(mock_ws.send.call_args[0][0])
        assert sent == {"type": "pong", "data": None, "timestamp": sent["timestamp"], "id": "hb-1"}
        await manager.disconnect()

    async def test_malformed_frame_dropped_connection_kept(self) -> None:
        sock = FakeSocket()
        manager = _manager(_connector(sock))
        received: list[Envelope] = []
        manager.on_message(received.append)

        await manager.connect()
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)
        sock.feed("{garbage")
        sock.feed('{"type":"mystery"}')
        sock.feed(protocol.encode(protocol.event(MessageType.ENERGY_ALERT, {"id": "a"})))
        await _until(lambda: len(received) == 1)

        assert manager.is_connected
        assert received[0].data == {"id": "a"}
        await manager.disconnect()

    async def test_send_when_connected(self) -> None:
        sock = FakeSocket()
        manager = _manager(_connector(sock))
        await manager.connect()
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)

        assert await manager.send_message(protocol.ping("c-1")) is True
        assert sock.sent == [{"type": "ping", "data": None,
                              "timestamp": sock.sent[0]["timestamp"], "id": "c-1"}]
        await manager.disconnect()

    async def test_send_when_disconnected_returns_false(self) -> None:
        manager = _manager(_connector())
        assert await manager.send_message(protocol.ping()) is False

    async def test_send_failure_returns_false(self) -> None:
        sock = FakeSocket()
        sock.send = AsyncMock(side_effect=ConnectionError("broken pipe"))  # type: ignore[method-assign]
        manager = _manager(_connector(sock))
        await manager.connect()
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)

        assert await manager.send_message(protocol.ping()) is False
        await manager.disconnect()


# ── Reconnect ───────────────────────────────────────────────────


class TestReconnect:
    async def test_reconnects_after_drop_and_resets_attempts(self) -> None:
        first, second = FakeSocket(), FakeSocket()
        connector = _connector(first, second)
        manager = _manager(connector)
        states: list[ConnectionState] = []
        manager.on_state_change(states.append)

        await manager.connect()
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)
        first.drop()
        await _until(lambda: connector.await_count == 2 and manager.is_connected)

        assert manager.attempts == 0
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ]
        await manager.disconnect()

    async def test_gives_up_after_max_attempts(self) -> None:
        connector = _connector(fail=100)
        manager = _manager(connector, max_attempts=10)

        await manager.connect()
        await manager.wait_for_state(ConnectionState.FAILED, timeout=2.0)
        await asyncio.sleep(0.02)

        assert connector.await_count == 10
        assert manager.attempts == 10
        assert manager.last_error == MAX_ATTEMPTS_ERROR
        assert not manager.reconnect_pending

    async def test_connect_from_failed_is_refused(self) -> None:
        connector = _connector(fail=1)
        manager = _manager(connector, max_attempts=1)
        await manager.connect()
        await manager.wait_for_state(ConnectionState.FAILED, timeout=1.0)

        await manager.connect()
        await asyncio.sleep(0.02)
        assert manager.state == ConnectionState.FAILED
        assert connector.await_count == 1

    async def test_reconnect_leaves_failed(self) -> None:
        sock = FakeSocket()
        connector = _connector(sock, fail=2)
        manager = _manager(connector, max_attempts=2)
        await manager.connect()
        await manager.wait_for_state(ConnectionState.FAILED, timeout=1.0)

        await manager.reconnect()
        await manager.wait_for_state(ConnectionState.CONNECTED, timeout=1.0)
        assert manager.attempts == 0
        assert manager.last_error is None
        await manager.disconnect()

    async def test_disconnect_cancels_pending_reconnect(self) -> None:
        connector = _connector(fail=100)
        manager = _manager(connector, delay_ms=60_000)
        await manager.connect()
        await manager.wait_for_state(ConnectionState.RECONNECTING, timeout=1.0)
        assert manager.reconnect_pending
        assert manager.last_error is not None

        await manager.disconnect()
        assert not manager.reconnect_pending
        assert manager.state == ConnectionState.DISCONNECTED
        assert connector.await_count == 1

    async def test_connect_while_waiting_to_reconnect_is_noop(self) -> None:
        connector = _connector(fail=100)
        manager = _manager(connector, delay_ms=60_000)
        await manager.connect()
        await manager.wait_for_state(ConnectionState.RECONNECTING, timeout=1.0)
        await manager.connect()
        await asyncio.sleep(0.01)
        assert connector.await_count == 1
        await manager.disconnect()
