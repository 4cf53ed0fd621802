"""Push channel — envelope protocol, fan-out, server and reconnecting client."""

from src.push.broadcaster import Broadcaster, InboundMessage, Subscriber
from src.push.connection import ConnectionManager
from src.push.exceptions import ProtocolError, PushError, UnknownMessageTypeError
from src.push.server import create_push_app, start_push_server

__all__ = [
    "Broadcaster",
    "ConnectionManager",
    "InboundMessage",
    "ProtocolError",
    "PushError",
    "Subscriber",
    "UnknownMessageTypeError",
    "create_push_app",
    "start_push_server",
]
