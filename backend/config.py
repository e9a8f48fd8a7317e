"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Flow Studio
core. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from log_buffer import get_log_buffer


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        server_url: Base URL of the remote flow server (API lives under /api).
        request_timeout_seconds: Timeout for ordinary REST calls.
        stream_connect_timeout_seconds: Connect timeout for streamed responses.
            Reads on a stream are never timed out; a turn can run for minutes.
        save_debounce_ms: Debounce window before a flow edit is persisted.
        session_pool_limit: Maximum interactive sessions per agent.
        session_refresh_interval_seconds: Polling period for session lists.
        transcript_cache_path: Path to the SQLite transcript cache.
        transcript_cache_max_messages: Messages kept per cached session.
        frame_interval_ms: Delay between coalesced transcript flushes.
        run_status_clear_seconds: Delay before node run highlights are cleared.
        max_run_events: Run events kept per flow in memory.
        log_buffer_size: Entries kept by the in-memory log console.
        backend_port: Port for the local FastAPI service.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Remote server
    server_url: str = "http://localhost:8081"
    request_timeout_seconds: float = 30.0
    stream_connect_timeout_seconds: float = 10.0

    # Flow synchronization
    save_debounce_ms: int = 500
    run_status_clear_seconds: float = 10.0
    max_run_events: int = 500

    # Sessions
    session_pool_limit: int = 5
    session_refresh_interval_seconds: float = 5.0
    frame_interval_ms: int = 16

    # Transcript cache
    transcript_cache_path: str = "./data/transcripts.db"
    transcript_cache_max_messages: int = 200

    # Server Configuration
    backend_port: int = 8090
    cors_origins: str | list[str] = ["http://localhost:1420"]
    log_level: str = "INFO"
    log_format: str = "json"
    log_buffer_size: int = 500

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:1420"]'
        - Comma-separated: 'http://localhost:1420,http://localhost:5173'
        - Single value: 'http://localhost:1420'
        - Already a list: ["http://localhost:1420"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:1420"]

    @field_validator("server_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the server URL so paths can be appended verbatim."""
        return v.rstrip("/")

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console
    output. Every event also lands in the in-memory log buffer that backs the
    console endpoint.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        get_log_buffer(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Size the console buffer before the first event is recorded
get_log_buffer().resize(settings.log_buffer_size)

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

# Create a logger for this module
logger = structlog.get_logger(__name__)
