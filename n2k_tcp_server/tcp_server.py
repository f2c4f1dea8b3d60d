"""TCP server broadcasting encoded NMEA 2000 messages to every client."""

import asyncio
from typing import Any, Callable, List, Optional
import structlog

from .codec import as_message, resolve_delimiter, resolve_encoder
from .config import EndpointConfig
from .events import EventBus, OUTBOUND_EVENTS
from .exceptions import BindError
from .logging_config import (
    error_handler,
    MESSAGES_RECEIVED, FRAMES_BROADCAST, CONNECTIONS_ACCEPTED, OPEN_CONNECTIONS
)
from .registry import ConnectionEntry, ConnectionRegistry

logger = structlog.get_logger(__name__)

READ_CHUNK_SIZE = 4096


class BroadcastServer:
    """
    One listening endpoint.

    Every message published on the bus is encoded in the endpoint's format,
    terminated with its delimiter and written to all connected clients.
    Client input is read and discarded.
    """

    def __init__(self, endpoint: EndpointConfig, bus: EventBus):
        """
        Initialize the server.

        Args:
            endpoint: Endpoint configuration
            bus: Host event bus to subscribe to

        Raises:
            UnknownFormatError: If the endpoint's format has no encoder
        """
        self.endpoint = endpoint
        self.bus = bus
        self.encoder = resolve_encoder(endpoint.format)
        self.delimiter = resolve_delimiter(endpoint.line_delimiter)
        self.registry = ConnectionRegistry()

        self._server: Optional[asyncio.AbstractServer] = None
        self._unsubscribes: List[Callable[[], None]] = []
        self._client_tasks: set = set()
        self._running = False
        self._bound_port = endpoint.port
        self._port_label = str(endpoint.port)

        self.messages_received = 0
        self.frames_sent = 0
        self.encode_errors = 0
        self.write_errors = 0

    async def start(self) -> None:
        """
        Bind the listening socket and subscribe to host messages.

        Raises:
            BindError: If the port cannot be bound
        """
        if self._running:
            logger.warning("TCP server already running", endpoint=self.endpoint.name)
            return

        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                host=self.endpoint.host,
                port=self.endpoint.port,
                reuse_address=True,
            )
        except OSError as e:
            raise BindError(self.endpoint.host, self.endpoint.port, e) from e

        for event in OUTBOUND_EVENTS:
            self._unsubscribes.append(self.bus.on(event, self.broadcast_message))

        sockets = self._server.sockets
        if sockets:
            self._bound_port = sockets[0].getsockname()[1]
        self._running = True
        self._port_label = str(self._bound_port)

        logger.info("NMEA2000 tcp server listening",
                    format=self.endpoint.format,
                    host=self.endpoint.host,
                    port=self.bound_port)

    async def stop(self) -> None:
        """Stop listening and drop every client. Safe to call repeatedly."""
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []

        if not self._running:
            return
        self._running = False

        server, self._server = self._server, None
        if server is not None:
            server.close()

        for entry in self.registry.clear():
            # Unsent data would hold close() and wait_closed() open
            self._close_writer(entry, abort=_has_pending_writes(entry))
        OPEN_CONNECTIONS.labels(port=self._port_label).set(0)

        # Client handlers finish once their sockets are closed
        if self._client_tasks:
            await asyncio.gather(*self._client_tasks, return_exceptions=True)

        if server is not None:
            await server.wait_closed()

        logger.info("NMEA2000 tcp server stopped",
                    format=self.endpoint.format,
                    port=self._port_label)

    async def _handle_client(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter) -> None:
        """Register a client and discard its input until it goes away."""
        if not self._running:
            writer.close()
            return

        task = asyncio.current_task()
        if task is not None:
            self._client_tasks.add(task)

        conn_id = self.registry.register(writer)
        entry = self.registry.get(conn_id)
        CONNECTIONS_ACCEPTED.labels(port=self._port_label).inc()
        OPEN_CONNECTIONS.labels(port=self._port_label).set(len(self.registry))
        logger.debug("Connected", id=conn_id, connection=entry.name, port=self._port_label)

        try:
            while True:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    logger.debug("Ended", id=conn_id, connection=entry.name)
                    break
        except (ConnectionError, OSError) as e:
            error_handler.handle_connection_error(self.bound_port, entry.name, e)
        finally:
            self._drop(entry)
            if task is not None:
                self._client_tasks.discard(task)

    def broadcast_message(self, message: Any) -> int:
        """
        Encode a host message and send it to all clients.

        Encoding failures are logged and never raised.

        Args:
            message: N2KMessage or its JSON form

        Returns:
            Number of clients the frame was written to
        """
        self.messages_received += 1
        MESSAGES_RECEIVED.labels(port=self._port_label).inc()

        try:
            payload = self.encoder(as_message(message))
        except Exception as e:
            self.encode_errors += 1
            error_handler.handle_encode_error(self.bound_port, _pgn_of(message), e)
            return 0

        return self.send(payload + self.delimiter)

    def send(self, frame: bytes) -> int:
        """
        Write a frame to every registered client.

        A client whose write fails, or whose unsent data grows past the
        endpoint's write buffer limit, is dropped; the others still get the
        frame.

        Returns:
            Number of successful writes
        """
        delivered = 0
        for entry in self.registry.snapshot():
            try:
                if entry.writer.is_closing():
                    raise ConnectionResetError("Connection is closing")
                entry.writer.write(frame)
                limit = self.endpoint.write_buffer_limit
                if limit and entry.writer.transport.get_write_buffer_size() > limit:
                    raise BufferError(f"Write buffer over {limit} bytes")
            except Exception as e:
                self.write_errors += 1
                error_handler.handle_write_error(self.bound_port, entry.name, e)
                # abort: close() would wait for the stuck buffer to drain
                self._drop(entry, abort=isinstance(e, BufferError))
                continue
            delivered += 1

        if delivered:
            self.frames_sent += delivered
            FRAMES_BROADCAST.labels(port=self._port_label).inc(delivered)
        return delivered

    def _drop(self, entry: ConnectionEntry, abort: bool = False) -> None:
        """Unregister and close a connection; repeated calls do nothing."""
        if self.registry.unregister(entry.id) is None:
            return
        OPEN_CONNECTIONS.labels(port=self._port_label).set(len(self.registry))
        self._close_writer(entry, abort)

    @staticmethod
    def _close_writer(entry: ConnectionEntry, abort: bool = False) -> None:
        try:
            if abort:
                entry.writer.transport.abort()
            else:
                entry.writer.close()
        except Exception as e:
            logger.debug("Error closing connection", connection=entry.name, error=str(e))

    @property
    def bound_port(self) -> int:
        """Port actually bound, which differs from the configured one for port 0."""
        return self._bound_port

    @property
    def connection_count(self) -> int:
        return len(self.registry)

    def is_running(self) -> bool:
        """Check if the server is listening."""
        return self._running

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "format": self.endpoint.format,
            "port": self.bound_port,
            "running": self._running,
            "connections": len(self.registry),
            "messages_received": self.messages_received,
            "frames_sent": self.frames_sent,
            "encode_errors": self.encode_errors,
            "write_errors": self.write_errors,
        }


def _has_pending_writes(entry: ConnectionEntry) -> bool:
    transport = entry.writer.transport
    return not transport.is_closing() and transport.get_write_buffer_size() > 0


def _pgn_of(message: Any) -> Optional[int]:
    pgn = getattr(message, "pgn", None)
    if pgn is None and isinstance(message, dict):
        pgn = message.get("pgn")
    return pgn
