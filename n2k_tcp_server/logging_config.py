"""Logging configuration with structured logging support."""

import sys
import logging
from pathlib import Path
from typing import Optional, Any, Dict
import structlog
from structlog.stdlib import LoggerFactory
from prometheus_client import Counter, Gauge, Info

from . import __version__
from .config import Settings


# Prometheus metrics
MESSAGES_RECEIVED = Counter(
    'n2k_messages_received_total',
    'Total number of messages received from the host',
    ['port']
)

FRAMES_BROADCAST = Counter(
    'n2k_frames_sent_total',
    'Total number of frames written to TCP clients',
    ['port']
)

ENCODE_ERRORS = Counter(
    'n2k_encode_errors_total',
    'Total number of messages that could not be encoded',
    ['port']
)

WRITE_ERRORS = Counter(
    'n2k_write_errors_total',
    'Total number of failed writes to TCP clients',
    ['port']
)

CONNECTIONS_ACCEPTED = Counter(
    'n2k_connections_accepted_total',
    'Total number of TCP clients accepted',
    ['port']
)

OPEN_CONNECTIONS = Gauge(
    'n2k_open_connections',
    'Number of currently connected TCP clients',
    ['port']
)

RUNNING_SERVERS = Gauge(
    'n2k_running_servers',
    'Number of TCP endpoints currently listening'
)

PROVIDER_ERRORS = Counter(
    'n2k_provider_errors_total',
    'Total number of endpoints that failed to start',
    ['kind']
)

INGEST_ERRORS = Counter(
    'n2k_ingest_errors_total',
    'Total number of malformed messages received on the ingest listener'
)

APP_INFO = Info(
    'n2k_tcp_server',
    'Application information'
)


def setup_logging(settings: Settings) -> None:
    """
    Configure structured logging with structlog.

    Args:
        settings: Application settings
    """
    # Set up stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level)
    )

    # Configure structlog processors
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_app_context,
    ]

    # Add appropriate renderer based on format
    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if settings.log_file:
        setup_file_logging(settings.log_file, settings.log_level)

    APP_INFO.info({
        'version': __version__,
        'servers': ','.join(endpoint.name for endpoint in settings.servers),
        'ingest_port': str(settings.ingest_port) if settings.ingest_enabled else 'disabled'
    })


def setup_file_logging(log_file: str, log_level: str) -> None:
    """
    Set up file-based logging.

    Args:
        log_file: Path to log file
        log_level: Logging level
    """
    try:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        from logging.handlers import RotatingFileHandler

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(getattr(logging, log_level))
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

        logging.getLogger().addHandler(file_handler)

    except OSError as e:
        logger = structlog.get_logger(__name__)
        logger.error("Failed to setup file logging",
                     log_file=log_file,
                     error=str(e))


def add_app_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add application context to all log messages."""
    event_dict['app'] = 'n2k-tcp-server'
    return event_dict


class ErrorHandler:
    """Centralized error handling with metrics and logging."""

    def __init__(self):
        self.logger = structlog.get_logger(__name__)
        self.error_counts: Dict[str, int] = {}

    def _count(self, kind: str) -> None:
        self.error_counts[kind] = self.error_counts.get(kind, 0) + 1

    def handle_configuration_error(self, endpoint: str, error: Exception) -> None:
        """Handle an endpoint that cannot be configured."""
        PROVIDER_ERRORS.labels(kind='configuration').inc()
        self._count('configuration')

        self.logger.error("Endpoint configuration error",
                          endpoint=endpoint,
                          error=str(error),
                          error_type=type(error).__name__)

    def handle_bind_error(self, endpoint: str, error: Exception) -> None:
        """Handle a listener that cannot bind its port."""
        PROVIDER_ERRORS.labels(kind='bind').inc()
        self._count('bind')

        self.logger.error("NMEA 2000 tcp server error",
                          endpoint=endpoint,
                          error=str(error),
                          error_type=type(error).__name__)

    def handle_encode_error(self, port: int, pgn: Optional[int], error: Exception) -> None:
        """Handle a message the encoder rejected."""
        ENCODE_ERRORS.labels(port=str(port)).inc()
        self._count('encode')

        self.logger.error("Message encoding error",
                          port=port,
                          pgn=pgn,
                          error=str(error),
                          error_type=type(error).__name__)

    def handle_write_error(self, port: int, connection: str, error: Exception) -> None:
        """Handle a failed write to a client."""
        WRITE_ERRORS.labels(port=str(port)).inc()
        self._count('write')

        self.logger.warning("Client write error",
                            port=port,
                            connection=connection,
                            error=str(error),
                            error_type=type(error).__name__)

    def handle_connection_error(self, port: int, connection: str, error: Exception) -> None:
        """Handle a transport error on a client connection."""
        self._count('connection')

        self.logger.warning("Client connection error",
                            port=port,
                            connection=connection,
                            error=str(error),
                            error_type=type(error).__name__)

    def handle_ingest_error(self, message: str, error: Exception, sender: Optional[tuple] = None) -> None:
        """Handle a malformed message on the ingest listener."""
        INGEST_ERRORS.inc()
        self._count('ingest')

        self.logger.warning("Ingest message error",
                            message=message,
                            error=str(error),
                            error_type=type(error).__name__,
                            sender=sender)

    def get_error_stats(self) -> Dict[str, int]:
        """Get error statistics."""
        return self.error_counts.copy()

    def reset_stats(self) -> None:
        """Reset error statistics."""
        self.error_counts.clear()


# Global error handler instance
error_handler = ErrorHandler()
