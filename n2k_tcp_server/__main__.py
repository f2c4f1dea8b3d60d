"""Main entry point for the NMEA 2000 TCP server."""

import asyncio
import signal
import sys
from typing import Optional
import structlog
from prometheus_client import start_http_server

from .config import Settings
from .events import EventBus
from .logging_config import setup_logging, error_handler
from .manager import ServerManager
from .udp_listener import UDPListener

logger = structlog.get_logger(__name__)


class N2KTCPServerApp:
    """Main application class wiring the bus, servers and ingest listener."""

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize the application."""
        self.settings = settings or Settings()
        self.bus = EventBus()
        self.manager = ServerManager(self.bus)
        self.udp_listener: Optional[UDPListener] = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._health_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the configured endpoints and the ingest listener."""
        logger.info("Starting NMEA 2000 TCP server",
                    config=self.settings.get_summary())

        if not self.settings.servers:
            logger.warning("No TCP servers configured")

        await self.manager.start(self.settings.servers)

        if self.settings.ingest_enabled:
            self.udp_listener = UDPListener(self.settings, self.bus)
            try:
                await self.udp_listener.start()
            except OSError:
                self.udp_listener = None

        self._running = True
        self._health_task = asyncio.create_task(self._monitor_health())

        logger.info("NMEA 2000 TCP server started")

    async def stop(self) -> None:
        """Stop everything gracefully."""
        if not self._running:
            self._shutdown_event.set()
            return

        logger.info("Stopping NMEA 2000 TCP server...")
        self._running = False

        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        if self.udp_listener:
            await self.udp_listener.stop()

        await self.manager.stop()

        self._shutdown_event.set()
        logger.info("NMEA 2000 TCP server stopped")

    async def _monitor_health(self) -> None:
        """Periodically log application statistics."""
        while self._running:
            await asyncio.sleep(self.settings.health_check_interval)
            stats = {
                'tcp': self.manager.get_stats(),
                'errors': error_handler.get_error_stats(),
            }
            if self.udp_listener:
                stats['udp'] = self.udp_listener.get_stats()
            logger.info("Application statistics", **stats)

    async def run(self) -> None:
        """Run the application until shutdown."""
        await self.start()
        await self._shutdown_event.wait()
        await self.stop()


def setup_signal_handlers(app: N2KTCPServerApp) -> None:
    """Set up signal handlers for graceful shutdown."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received shutdown signal", signal=sig.name)
        app._stop_task = asyncio.ensure_future(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler, signal.Signals(s)))


async def run_app() -> None:
    """Load settings, configure logging and run until stopped."""
    settings = Settings()

    setup_logging(settings)

    if settings.metrics_enabled:
        start_http_server(settings.metrics_port)
        logger.info("Prometheus metrics server started",
                    port=settings.metrics_port)

    app = N2KTCPServerApp(settings)
    setup_signal_handlers(app)

    try:
        await app.run()
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        sys.exit(1)


def main() -> None:
    """Console script entry point."""
    asyncio.run(run_app())


if __name__ == "__main__":
    main()
