"""Envelope wire codec and message builders for the push channel."""

from __future__ import annotations

import itertools
import json
from typing import Any

from pydantic import ValidationError

from src.core.types import Alert, Envelope, MessageType, TickResult
from src.push.exceptions import ProtocolError, UnknownMessageTypeError

_KNOWN_TYPES = frozenset(t.value for t in MessageType)
_ping_ids = itertools.count(1)


def encode(envelope: Envelope) -> str:
    """Serialise an envelope to its JSON text frame.

    ``id`` is omitted when unset; ``data`` is always present.
    """
    payload = envelope.model_dump(mode="json")
    if payload.get("id") is None:
        payload.pop("id", None)
    return json.dumps(payload, separators=(",", ":"))


def decode(raw: str | bytes) -> Envelope:
    """Parse a text frame into an envelope.

    Raises:
        UnknownMessageTypeError: Valid JSON object with an unrecognised type.
        ProtocolError: Anything else that is not a valid envelope.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError("Invalid message format") from exc

    if not isinstance(payload, dict):
        raise ProtocolError("Invalid message format")

    message_id = payload.get("id")
    if message_id is not None and not isinstance(message_id, str):
        message_id = str(message_id)
        payload["id"] = message_id

    message_type = payload.get("type")
    if not isinstance(message_type, str):
        raise ProtocolError("Invalid message format")
    if message_type not in _KNOWN_TYPES:
        raise UnknownMessageTypeError(message_type, message_id)

    try:
        return Envelope.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolError("Invalid message format") from exc


# ── Builders ─────────────────────────────────────────────────────


def ping(message_id: str | None = None) -> Envelope:
    return Envelope(type=MessageType.PING, id=message_id or f"hb-{next(_ping_ids)}")


def pong(request: Envelope) -> Envelope:
    """Heartbeat reply echoing the ping's id."""
    return Envelope(type=MessageType.PONG, id=request.id)


def error(message: str, message_id: str | None = None) -> Envelope:
    return Envelope(type=MessageType.ERROR, data={"message": message}, id=message_id)


def energy_update(tick: TickResult) -> Envelope:
    return Envelope(
        type=MessageType.ENERGY_UPDATE,
        data={
            "reading": tick.reading.model_dump(mode="json"),
            "circuits": [c.model_dump(mode="json") for c in tick.circuits],
        },
    )


def energy_alert(alert: Alert) -> Envelope:
    return Envelope(type=MessageType.ENERGY_ALERT, data=alert.model_dump(mode="json"))


def event(message_type: MessageType, data: Any = None) -> Envelope:
    return Envelope(type=message_type, data=data)
