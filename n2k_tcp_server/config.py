"""Configuration management using environment variables."""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EndpointConfig(BaseModel):
    """One TCP listener and the wire format it serves."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    # Checked against the known encoders when the server starts so that one
    # bad entry does not keep the other endpoints from loading
    format: str = Field(
        default="actisense",
        description="Output format (actisense, ydgw or digitalYacht)"
    )
    port: int = Field(
        ...,
        ge=0,
        le=65535,
        description="TCP port to listen on"
    )
    line_delimiter: str = Field(
        default="LF",
        alias="lineDelimiter",
        description="Terminator appended to each message (None, LF or CRLF)"
    )
    host: str = Field(
        default="0.0.0.0",
        description="Address to bind the listener to"
    )
    write_buffer_limit: int = Field(
        default=1024 * 1024,
        ge=0,
        description="Unsent bytes allowed per client before it is dropped (0 = no limit)"
    )

    @property
    def name(self) -> str:
        return f"{self.format}@{self.host}:{self.port}"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

    # TCP servers, e.g. SERVERS='[{"format": "actisense", "port": 9001}]'
    servers: List[EndpointConfig] = Field(
        default_factory=list,
        description="TCP endpoints to serve"
    )

    # UDP ingest configuration
    ingest_enabled: bool = Field(
        default=True,
        description="Accept JSON messages over UDP and publish them"
    )
    ingest_host: str = Field(
        default="0.0.0.0",
        description="Host to bind the UDP ingest listener to"
    )
    ingest_port: int = Field(
        default=5006,
        ge=0,
        le=65535,
        description="Port to listen for JSON messages"
    )
    ingest_buffer_size: int = Field(
        default=65536,
        ge=256,
        le=262144,
        description="UDP receive buffer size in bytes"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_format: str = Field(
        default="json",
        description="Log format (json or text)"
    )
    log_file: Optional[str] = Field(
        default=None,
        description="Optional log file path"
    )

    # Metrics Configuration
    metrics_enabled: bool = Field(
        default=True,
        description="Enable Prometheus metrics"
    )
    metrics_port: int = Field(
        default=8090,
        ge=1,
        le=65535,
        description="Port for Prometheus metrics endpoint"
    )

    # Health Check Configuration
    health_check_interval: int = Field(
        default=30,
        ge=5,
        le=300,
        description="Seconds between statistics reports"
    )

    @validator("log_level")
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @validator("log_format")
    def validate_log_format(cls, v):
        """Validate log format."""
        v_lower = v.lower()
        if v_lower not in ("json", "text"):
            raise ValueError(f"Invalid log format: {v}. Must be json or text")
        return v_lower

    def get_summary(self) -> dict:
        """Get configuration summary for logging."""
        return {
            "servers": [endpoint.name for endpoint in self.servers],
            "ingest": f"udp {self.ingest_host}:{self.ingest_port}" if self.ingest_enabled else "disabled",
            "log_level": self.log_level,
            "metrics": f"port {self.metrics_port}" if self.metrics_enabled else "disabled"
        }
