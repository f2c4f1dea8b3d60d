"""NMEA 2000 TCP Server - Broadcast NMEA 2000 messages to TCP clients in serial formats."""

__version__ = "1.0.0"

from .config import Settings, EndpointConfig
from .codec import N2KMessage, MessageFormat, Delimiter, encode
from .events import EventBus, ANALYZER_OUT, JSON_OUT
from .registry import ConnectionRegistry, ConnectionEntry
from .tcp_server import BroadcastServer
from .manager import ServerManager
from .exceptions import (
    N2KServerError, ConfigurationError, UnknownFormatError, BindError, MessageFormatError
)

__all__ = [
    "Settings",
    "EndpointConfig",
    "N2KMessage",
    "MessageFormat",
    "Delimiter",
    "encode",
    "EventBus",
    "ANALYZER_OUT",
    "JSON_OUT",
    "ConnectionRegistry",
    "ConnectionEntry",
    "BroadcastServer",
    "ServerManager",
    "N2KServerError",
    "ConfigurationError",
    "UnknownFormatError",
    "BindError",
    "MessageFormatError",
]
