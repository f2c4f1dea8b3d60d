"""Asynchronous UDP listener publishing JSON messages on the event bus."""

import asyncio
import socket
from typing import Optional
import structlog

from .codec import N2KMessage
from .config import Settings
from .events import EventBus, JSON_OUT
from .exceptions import MessageFormatError
from .logging_config import error_handler

logger = structlog.get_logger(__name__)


class UDPProtocol(asyncio.DatagramProtocol):
    """Asyncio UDP protocol handler."""

    def __init__(self, bus: EventBus, buffer_size: int = 65536):
        """
        Initialize UDP protocol.

        Args:
            bus: Event bus to publish messages on
            buffer_size: Socket receive buffer size
        """
        self.bus = bus
        self.buffer_size = buffer_size
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.messages_received = 0
        self.parse_errors = 0

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        """Called when the socket is bound."""
        self.transport = transport
        sock = transport.get_extra_info('socket')
        if sock:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, self.buffer_size)
            except OSError as e:
                logger.warning("Failed to set socket options", error=str(e))

        logger.info("UDP listener started",
                    local_addr=transport.get_extra_info('sockname'))

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        """
        Handle a datagram holding one JSON message per line.

        Args:
            data: Raw datagram data
            addr: Sender address (host, port)
        """
        try:
            text = data.decode('utf-8')
        except UnicodeDecodeError as e:
            self.parse_errors += 1
            error_handler.handle_ingest_error(data.hex(), e, addr)
            return

        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            self.messages_received += 1
            try:
                message = N2KMessage.from_json(line)
            except MessageFormatError as e:
                self.parse_errors += 1
                error_handler.handle_ingest_error(line, e, addr)
                continue

            logger.debug("Received message", sender=addr, pgn=message.pgn)
            self.bus.emit(JSON_OUT, message)

    def error_received(self, exc: Exception) -> None:
        """Handle protocol errors."""
        logger.error("UDP protocol error", error=str(exc))

    def connection_lost(self, exc: Optional[Exception]) -> None:
        """Handle socket close."""
        if exc:
            logger.error("UDP connection lost", error=str(exc))
        else:
            logger.info("UDP connection closed")

    def get_stats(self) -> dict:
        """Get listener statistics."""
        return {
            "messages_received": self.messages_received,
            "parse_errors": self.parse_errors,
            "error_rate": self.parse_errors / max(1, self.messages_received)
        }


class UDPListener:
    """Receives JSON-form messages over UDP and publishes them."""

    def __init__(self, settings: Settings, bus: EventBus):
        """
        Initialize UDP listener.

        Args:
            settings: Application settings
            bus: Event bus to publish messages on
        """
        self.settings = settings
        self.bus = bus
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.protocol: Optional[UDPProtocol] = None
        self._running = False

    async def start(self) -> None:
        """Start the UDP listener."""
        if self._running:
            logger.warning("UDP listener already running")
            return

        try:
            loop = asyncio.get_running_loop()
            self.transport, self.protocol = await loop.create_datagram_endpoint(
                lambda: UDPProtocol(self.bus, self.settings.ingest_buffer_size),
                local_addr=(self.settings.ingest_host, self.settings.ingest_port),
            )
        except OSError as e:
            logger.error("Failed to start UDP listener",
                         host=self.settings.ingest_host,
                         port=self.settings.ingest_port,
                         error=str(e))
            raise

        self._running = True

        logger.info("UDP listener started successfully",
                    host=self.settings.ingest_host,
                    port=self.settings.ingest_port)

    async def stop(self) -> None:
        """Stop the UDP listener."""
        if not self._running:
            return

        self._running = False

        if self.transport:
            self.transport.close()
            self.transport = None

        logger.info("UDP listener stopped")

    def is_running(self) -> bool:
        """Check if listener is running."""
        return self._running

    def get_stats(self) -> dict:
        """Get listener statistics."""
        if self.protocol:
            return self.protocol.get_stats()
        return {
            "messages_received": 0,
            "parse_errors": 0,
            "error_rate": 0.0
        }
