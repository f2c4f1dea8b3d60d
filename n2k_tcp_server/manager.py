"""Lifecycle management for the configured TCP endpoints."""

from typing import Iterable, List
import structlog

from .config import EndpointConfig
from .events import EventBus
from .exceptions import BindError, ConfigurationError
from .logging_config import error_handler, RUNNING_SERVERS
from .tcp_server import BroadcastServer

logger = structlog.get_logger(__name__)


class ServerManager:
    """Owns every running BroadcastServer of the process."""

    def __init__(self, bus: EventBus):
        """
        Initialize the manager.

        Args:
            bus: Host event bus the servers subscribe to
        """
        self.bus = bus
        self.servers: List[BroadcastServer] = []
        self.provider_errors: List[str] = []

    async def start(self, endpoints: Iterable[EndpointConfig]) -> List[BroadcastServer]:
        """
        Start one server per endpoint.

        An endpoint with an unknown format or a port that cannot be bound is
        reported and skipped; the remaining endpoints still start.

        Args:
            endpoints: Endpoint configurations in start order

        Returns:
            The servers started by this call
        """
        started = []
        for endpoint in endpoints:
            try:
                server = BroadcastServer(endpoint, self.bus)
            except ConfigurationError as e:
                self.provider_errors.append(str(e))
                error_handler.handle_configuration_error(endpoint.name, e)
                continue

            try:
                await server.start()
            except BindError as e:
                self.provider_errors.append(str(e))
                error_handler.handle_bind_error(endpoint.name, e)
                continue

            self.servers.append(server)
            started.append(server)

        RUNNING_SERVERS.set(len(self.servers))
        logger.info("TCP endpoints started",
                    running=len(self.servers),
                    failed=len(self.provider_errors))
        return started

    async def stop(self) -> None:
        """Stop every server. Safe to call when nothing is running."""
        servers, self.servers = self.servers, []
        for server in servers:
            try:
                await server.stop()
            except Exception as e:
                logger.error("Error stopping TCP server",
                             endpoint=server.endpoint.name,
                             error=str(e),
                             exc_info=True)
        RUNNING_SERVERS.set(0)
        if servers:
            logger.info("TCP endpoints stopped", count=len(servers))

    @property
    def connection_count(self) -> int:
        return sum(server.connection_count for server in self.servers)

    def get_stats(self) -> dict:
        """Get statistics for every running server."""
        return {
            "servers": [server.get_stats() for server in self.servers],
            "connections": self.connection_count,
            "provider_errors": list(self.provider_errors),
        }
