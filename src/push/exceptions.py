"""Exception hierarchy for the push channel."""

from __future__ import annotations


class PushError(Exception):
    """Base exception for all push channel errors."""


class ProtocolError(PushError):
    """An inbound payload is not a valid envelope."""


class UnknownMessageTypeError(ProtocolError):
    """The payload parsed but carries a type tag this side does not know."""

    def __init__(self, message_type: object, message_id: str | None = None) -> None:
        super().__init__(f"Unknown message type: {message_type}")
        self.message_type = message_type
        self.message_id = message_id
