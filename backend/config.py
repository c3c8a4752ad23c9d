"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the session
bridge. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any, Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from errors import ConfigurationError


def _parse_str_list(v: Any, default: list[str]) -> list[str]:
    """Parse a list setting from a JSON array, comma-separated string or list."""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in v.split(",") if item.strip()]
    return default


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        use_mock_engine: If True, drive sessions with the built-in echo engine.
        engine_class: Import path ("module:Class") of an external agent engine.
        engine_api_key: Credential passed to the external engine.
        default_model: Model used when the client does not request one.
        default_cwd: Working directory handed to the engine.
        default_allowed_tools: Tools the engine may use unless overridden.
        disconnect_grace_seconds: How long a disconnected session is kept.
        hook_timeout_seconds: How long a hook request waits for the client.
        notify_only_hooks: Hook events that notify the client and continue.
        hook_fallback_policy: Response used when a hook gets no client answer.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Engine Configuration
    use_mock_engine: bool = True
    engine_class: str = ""
    engine_api_key: str = ""
    default_model: str = "claude-sonnet-4-5-20250929"
    default_cwd: str = "/workspace"
    default_allowed_tools: str | list[str] = [
        "Read", "Write", "Bash", "Grep", "WebSearch", "WebFetch", "Task",
        "BashOutput", "Edit", "Glob", "KillBash", "NotebookEdit", "TodoWrite",
        "ExitPlanMode", "ListMcpResources", "ReadMcpResource", "Skill",
    ]

    # Session Configuration
    # 15 minutes lets a long agent run survive a page reload or laptop sleep
    disconnect_grace_seconds: float = 900.0

    # Hook Configuration
    hook_timeout_seconds: float = 300.0
    notify_only_hooks: str | list[str] = ["PostToolUse"]
    hook_fallback_policy: Literal["open", "closed"] = "open"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        return _parse_str_list(v, ["http://localhost:3000"])

    @field_validator("notify_only_hooks", mode="before")
    @classmethod
    def parse_notify_only_hooks(cls, v: Any) -> list[str]:
        """Parse notify-only hook names from string or list."""
        return _parse_str_list(v, ["PostToolUse"])

    @field_validator("default_allowed_tools", mode="before")
    @classmethod
    def parse_allowed_tools(cls, v: Any) -> list[str]:
        """Parse the default tool allow-list from string or list."""
        return _parse_str_list(v, [])

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def check_required_settings(settings: "Settings") -> None:
    """Validate settings that must be present before the server starts.

    Args:
        settings: The loaded application settings.

    Raises:
        ConfigurationError: If an external engine is selected without the
            import path or credential it needs.
    """
    if settings.use_mock_engine:
        return
    if not settings.engine_class:
        raise ConfigurationError(
            "ENGINE_CLASS must be set when USE_MOCK_ENGINE is false"
        )
    if not settings.engine_api_key:
        raise ConfigurationError(
            "ENGINE_API_KEY must be set when USE_MOCK_ENGINE is false"
        )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
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

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
