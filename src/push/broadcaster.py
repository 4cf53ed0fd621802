"""Fan-out of tick envelopes to push subscribers, plus heartbeat handling."""

from __future__ import annotations

import abc
import asyncio
from collections import deque
from dataclasses import dataclass

import structlog

from src.core.observers import Observer, ObserverList, Subscription
from src.core.types import Envelope, MessageType, TickResult
from src.push import protocol
from src.push.exceptions import ProtocolError, UnknownMessageTypeError

logger = structlog.stdlib.get_logger()


class Subscriber(abc.ABC):
    """One end of an open push channel (e.g. a WebSocket client)."""

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        """Whether frames can still be written."""

    @abc.abstractmethod
    async def send_text(self, text: str) -> None:
        """Write a single text frame."""

    async def close(self) -> None:
        """Close the channel. No-op by default."""

    @property
    def label(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class InboundMessage:
    """An envelope received from a subscriber."""

    subscriber: Subscriber
    envelope: Envelope


class _Outbox:
    """Per-subscriber outbound lanes drained by a dedicated writer task.

    Control frames (pong, error) always go out before queued data frames.
    The data lane is bounded; when full the oldest frame is dropped.
    """

    def __init__(self, subscriber: Subscriber, maxsize: int) -> None:
        self.subscriber = subscriber
        self.control: deque[str] = deque()
        self.data: deque[str] = deque(maxlen=maxsize)
        self.dropped = 0
        self.wakeup = asyncio.Event()
        self.idle = asyncio.Event()
        self.idle.set()
        self.task: asyncio.Task[None] | None = None

    def push_control(self, text: str) -> None:
        self.control.append(text)
        self._signal()

    def push_data(self, text: str) -> None:
        if len(self.data) == self.data.maxlen:
            self.dropped += 1
        self.data.append(text)
        self._signal()

    def pop(self) -> str | None:
        if self.control:
            return self.control.popleft()
        if self.data:
            return self.data.popleft()
        return None

    def _signal(self) -> None:
        self.idle.clear()
        self.wakeup.set()


class Broadcaster:
    """Delivers envelopes to every open subscriber.

    Each subscriber gets its own writer task, so a slow or broken
    subscriber never delays the others. A delivery failure detaches only
    the failing subscriber.

    Inbound frames are routed through :meth:`handle_inbound`: a ``ping`` is
    answered with a ``pong`` echoing its id ahead of anything already
    queued for that subscriber; malformed or unknown frames are answered
    with an ``error`` envelope; everything else goes to handlers registered
    with :meth:`on_message`.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._outboxes: dict[int, _Outbox] = {}
        self._handlers: dict[MessageType, ObserverList[InboundMessage]] = {}
        self._published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._outboxes)

    @property
    def published_count(self) -> int:
        return self._published

    # ── Subscription ────────────────────────────────────────────

    def subscribe(self, subscriber: Subscriber) -> Subscription:
        """Attach a subscriber and start its writer task."""
        key = id(subscriber)
        if key not in self._outboxes:
            outbox = _Outbox(subscriber, self._queue_size)
            outbox.task = asyncio.create_task(self._drain(key, outbox))
            self._outboxes[key] = outbox
        return Subscription(lambda: self._detach(key))

    def on_message(
        self, message_type: MessageType, handler: Observer[InboundMessage]
    ) -> Subscription:
        """Register a handler for inbound envelopes of one type."""
        observers = self._handlers.setdefault(
            message_type, ObserverList(f"inbound_{message_type}")
        )
        return observers.subscribe(handler)

    def _detach(self, key: int) -> None:
        outbox = self._outboxes.pop(key, None)
        if outbox is None:
            return
        outbox.idle.set()
        if outbox.task is not None and outbox.task is not asyncio.current_task():
            outbox.task.cancel()

    # ── Outbound ────────────────────────────────────────────────

    def publish(self, tick: TickResult) -> int:
        """Queue one ``energy_update`` plus one ``energy_alert`` per alert.

        Returns the number of subscribers the tick was queued for.
        """
        frames = [protocol.encode(protocol.energy_update(tick))]
        frames.extend(protocol.encode(protocol.energy_alert(a)) for a in tick.alerts)
        delivered = self._fan_out(frames)
        self._published += 1
        return delivered

    def notify(self, message_type: MessageType, data: object = None) -> int:
        """Broadcast an arbitrary domain event."""
        return self._fan_out([protocol.encode(protocol.event(message_type, data))])

    def heartbeat(self) -> int:
        """Broadcast a ``ping`` to every subscriber.

        Pings ride the control lane, so a backlog of updates never drops them.
        """
        return self._fan_out([protocol.encode(protocol.ping())], control=True)

    def send_to(self, subscriber: Subscriber, envelope: Envelope) -> bool:
        """Queue an envelope for one subscriber only."""
        outbox = self._outboxes.get(id(subscriber))
        if outbox is None:
            return False
        outbox.push_data(protocol.encode(envelope))
        return True

    def _fan_out(self, frames: list[str], control: bool = False) -> int:
        delivered = 0
        for key, outbox in list(self._outboxes.items()):
            if not outbox.subscriber.is_open:
                logger.info("push_subscriber_gone", subscriber=outbox.subscriber.label)
                self._detach(key)
                continue
            push = outbox.push_control if control else outbox.push_data
            for frame in frames:
                push(frame)
            delivered += 1
        return delivered

    async def _drain(self, key: int, outbox: _Outbox) -> None:
        try:
            while True:
                await outbox.wakeup.wait()
                outbox.wakeup.clear()
                while (frame := outbox.pop()) is not None:
                    await outbox.subscriber.send_text(frame)
                outbox.idle.set()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("push_delivery_failed", subscriber=outbox.subscriber.label)
            self._detach(key)

    async def flush(self) -> None:
        """Wait until every subscriber's lanes are empty."""
        for outbox in list(self._outboxes.values()):
            await outbox.idle.wait()

    # ── Inbound ─────────────────────────────────────────────────

    async def handle_inbound(self, subscriber: Subscriber, raw: str | bytes) -> None:
        outbox = self._outboxes.get(id(subscriber))
        if outbox is None:
            logger.warning("push_inbound_from_unknown_subscriber", subscriber=subscriber.label)
            return

        try:
            envelope = protocol.decode(raw)
        except UnknownMessageTypeError as exc:
            logger.warning("push_unknown_message_type", message_type=str(exc.message_type))
            outbox.push_control(protocol.encode(protocol.error(str(exc), exc.message_id)))
            return
        except ProtocolError as exc:
            logger.error("push_invalid_message", error=str(exc), raw=str(raw)[:200])
            outbox.push_control(protocol.encode(protocol.error(str(exc))))
            return

        if envelope.type == MessageType.PING:
            outbox.push_control(protocol.encode(protocol.pong(envelope)))
            return
        if envelope.type == MessageType.PONG:
            return

        handlers = self._handlers.get(envelope.type)
        if not handlers:
            outbox.push_control(protocol.encode(protocol.error(
                f"Unsupported message type: {envelope.type}", envelope.id,
            )))
            return
        await handlers.notify(InboundMessage(subscriber=subscriber, envelope=envelope))

    # ── Lifecycle ───────────────────────────────────────────────

    async def close(self) -> None:
        outboxes = list(self._outboxes.values())
        for key in list(self._outboxes):
            self._detach(key)
        for outbox in outboxes:
            if outbox.task is not None:
                try:
                    await outbox.task
                except asyncio.CancelledError:
                    pass
            try:
                await outbox.subscriber.close()
            except Exception:
                logger.exception("push_subscriber_close_error", subscriber=outbox.subscriber.label)
