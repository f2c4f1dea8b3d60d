"""Exception types raised by the NMEA 2000 TCP server."""

from typing import Optional


class N2KServerError(Exception):
    """Base class for all server errors."""


class ConfigurationError(N2KServerError):
    """An endpoint configuration cannot be used."""


class UnknownFormatError(ConfigurationError):
    """The configured output format has no encoder."""

    def __init__(self, format_name: str):
        self.format_name = format_name
        super().__init__(f"Unknown format: {format_name}")


class BindError(N2KServerError):
    """A listening socket could not be bound."""

    def __init__(self, host: str, port: int, cause: Optional[OSError] = None):
        self.host = host
        self.port = port
        self.cause = cause
        reason = cause.strerror if cause is not None and cause.strerror else str(cause)
        super().__init__(f"Cannot listen on {host}:{port}: {reason}")


class MessageFormatError(N2KServerError):
    """A message payload could not be interpreted."""
