"""
Enhanced structlog-based logging configuration for the queue realtime core.

This module provides the logging system used by every component: structlog
processors for sensitive-data redaction and correlation IDs, contextvars for
per-session context (staff id, role), and a rotating file handler per
environment.
"""

import json
import logging
import os
import sys
import threading
import uuid
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.contextvars import (
    bind_contextvars,
    clear_contextvars,
    merge_contextvars,
)
from structlog.stdlib import BoundLogger, LoggerFactory

# Module-level logger for internal use
logger = structlog.get_logger(__name__)

_created_dirs: set[str] = set()
_created_dirs_lock = threading.Lock()

_LOGGING_INITIALIZED = False
_LOGGING_SIGNATURE: str | None = None

VALID_ENVIRONMENTS = ("unit_test", "local", "production")


def _ensure_log_directory(log_path: Path) -> None:
    """
    Create the parent directory of a log file once per process.

    Args:
        log_path: Path to the log file (directory will be created for parent)
    """
    dir_path = log_path.parent
    dir_str = str(dir_path)

    with _created_dirs_lock:
        if dir_str in _created_dirs:
            return
        try:
            dir_path.mkdir(parents=True, exist_ok=True)
            _created_dirs.add(dir_str)
        except OSError as e:
            # Logging must not fail because the directory could not be created
            logger.warning(
                "Failed to create log directory",
                directory=dir_str,
                error=str(e),
                error_type=type(e).__name__,
            )


def _resolve_log_base(log_base: str) -> Path:
    """
    Resolve log_base to an absolute path relative to the project root.

    The project root is the nearest directory (cwd or a parent) holding a
    pyproject.toml; the cwd is used when none is found.
    """
    log_path = Path(log_base)
    if log_path.is_absolute():
        return log_path

    current_dir = Path.cwd()
    for parent in [current_dir] + list(current_dir.parents):
        if (parent / "pyproject.toml").exists():
            return parent / log_path
    return current_dir / log_path


def detect_environment() -> str:
    """
    Detect the current environment.

    Returns:
        Environment name: "unit_test", "local", or "production"
    """
    if "pytest" in sys.modules:
        return "unit_test"

    env = os.getenv("LOGGING_ENVIRONMENT", "")
    if env in VALID_ENVIRONMENTS:
        return env

    return "local"


def sanitize_sensitive_data(_logger: Any, _name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Remove sensitive data from log entries.

    Push tokens, credentials and session cookies must never reach a log file.

    Args:
        _logger: Logger instance (unused)
        _name: Logger name (unused)
        event_dict: Event dictionary to sanitize

    Returns:
        Sanitized event dictionary
    """
    sensitive_keys = [
        "password",
        "token",
        "secret",
        "credential",
        "cookie",
        "authorization",
        "bearer",
    ]

    def sanitize_dict(d: dict[str, Any]) -> dict[str, Any]:
        sanitized: dict[str, Any] = {}
        for key, value in d.items():
            if isinstance(value, dict):
                sanitized[key] = sanitize_dict(value)
            elif isinstance(key, str) and any(sensitive in key.lower() for sensitive in sensitive_keys):
                sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = value
        return sanitized

    return sanitize_dict(event_dict)


def add_correlation_id(_logger: Any, _name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add a correlation ID to log entries that are not already bound to one."""
    if "correlation_id" not in event_dict:
        event_dict["correlation_id"] = str(uuid.uuid4())
    return event_dict


def configure_enhanced_structlog(
    environment: str | None = None,
    log_level: str = "INFO",
    log_config: dict[str, Any] | None = None,
) -> None:
    """
    Configure structlog with redaction, context variables and file output.

    Args:
        environment: Environment name (auto-detected if None)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_config: Logging configuration dictionary
    """
    if environment is None:
        environment = detect_environment()

    base_processors = [
        sanitize_sensitive_data,
        merge_contextvars,
        add_correlation_id,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_config and not log_config.get("disable_logging", False):
        _setup_file_logging(environment, log_config, log_level)
    else:
        logging.getLogger().setLevel(getattr(logging, str(log_level).upper(), logging.INFO))

    structlog.configure(
        processors=base_processors + [structlog.processors.KeyValueRenderer(sort_keys=False)],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=False,
    )


def _setup_file_logging(environment: str, log_config: dict[str, Any], log_level: str) -> None:
    """Attach a rotating file handler and an errors-only handler to the root logger."""
    env_log_dir = _resolve_log_base(log_config.get("log_base", "logs")) / environment
    _ensure_log_directory(env_log_dir / ".dummy")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, str(log_level).upper(), logging.INFO))

    max_bytes = int(log_config.get("max_bytes", 10 * 1024 * 1024))
    backup_count = int(log_config.get("backup_count", 5))
    formatter = logging.Formatter("%(message)s")

    main_handler = RotatingFileHandler(
        env_log_dir / "queue_realtime.log", maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    main_handler.setFormatter(formatter)

    errors_handler = RotatingFileHandler(
        env_log_dir / "errors.log", maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    errors_handler.setLevel(logging.ERROR)
    errors_handler.setFormatter(formatter)

    for handler in list(root_logger.handlers):
        if isinstance(handler, RotatingFileHandler):
            root_logger.removeHandler(handler)
            handler.close()

    root_logger.addHandler(main_handler)
    root_logger.addHandler(errors_handler)


def setup_enhanced_logging(config: dict[str, Any], *, force_reconfigure: bool = False) -> None:
    """
    Set up logging from a configuration dictionary.

    Args:
        config: Configuration dictionary with a "logging" section
        force_reconfigure: Reconfigure even when logging is already initialized
    """
    global _LOGGING_INITIALIZED  # pylint: disable=global-statement
    global _LOGGING_SIGNATURE  # pylint: disable=global-statement

    config_signature = json.dumps(config, sort_keys=True, default=str)

    if _LOGGING_INITIALIZED and not force_reconfigure:
        get_logger("queue_realtime.logging.setup").debug(
            "setup_enhanced_logging skipped; logging system already initialized",
            config_signature=_LOGGING_SIGNATURE,
        )
        return

    logging_config = config.get("logging", {})
    environment = logging_config.get("environment") or detect_environment()
    log_level = logging_config.get("level", "INFO")

    if logging_config.get("disable_logging", False):
        configure_enhanced_structlog(environment, log_level, {"disable_logging": True})
    else:
        configure_enhanced_structlog(environment, log_level, logging_config)

    get_logger("queue_realtime.logging").info(
        "Enhanced logging system initialized",
        environment=environment,
        log_level=log_level,
        log_base=logging_config.get("log_base", "logs"),
        started_at=datetime.now(UTC).isoformat(),
    )

    _LOGGING_INITIALIZED = True
    _LOGGING_SIGNATURE = config_signature


def bind_request_context(correlation_id: str | None = None, **kwargs: Any) -> None:
    """
    Bind context (staff id, role, session) to every subsequent log entry.

    Args:
        correlation_id: Correlation ID for the session; generated when omitted
        **kwargs: Additional context variables; None values are skipped
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())

    context_vars = {"correlation_id": correlation_id, **kwargs}
    bind_contextvars(**{k: v for k, v in context_vars.items() if v is not None})


def clear_request_context() -> None:
    """Clear the bound logging context."""
    clear_contextvars()


def get_current_context() -> dict[str, Any]:
    """Get the current logging context."""
    return structlog.contextvars.get_contextvars()


def get_logger(name: str) -> Any:  # Returns BoundLogger but typed as Any for flexibility
    """
    Get a structlog logger with the specified name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger instance
    """
    return structlog.get_logger(name)
