"""Structured logging configuration using loguru.

In production, logs are JSON lines in the Google Cloud Logging format.
In development, output is human-readable and colored.

Correlation keys are secrets: only their first characters are ever logged.
"""

import json
import logging
import sys
import traceback
from typing import Any

from loguru import logger

STATE_PREFIX_LENGTH = 8

# Map loguru levels to Cloud Logging severity
SEVERITY_MAP = {
    "TRACE": "DEBUG",
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "INFO",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL",
}


def _cloud_logging_serializer(record: dict[str, Any]) -> str:
    """Serialize log record to Google Cloud Logging JSON format.

    Cloud Logging expects specific field names:
    - severity: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - message: The log message
    - time: ISO format timestamp

    Additional fields from `extra` are included at the top level.
    """
    log_entry: dict[str, Any] = {
        "severity": SEVERITY_MAP.get(record["level"].name, "INFO"),
        "message": record["message"],
        "time": record["time"].isoformat(),
    }

    # Add location info for errors
    if record["level"].no >= 40:
        log_entry["logging.googleapis.com/sourceLocation"] = {
            "file": record["file"].path,
            "line": str(record["line"]),
            "function": record["function"],
        }

    if record["exception"] is not None:
        exc_info = record["exception"]
        tb_str = None
        if exc_info.traceback:
            tb_str = "".join(
                traceback.format_exception(exc_info.type, exc_info.value, exc_info.traceback)
            )
        log_entry["exception"] = {
            "type": exc_info.type.__name__ if exc_info.type else None,
            "value": str(exc_info.value) if exc_info.value else None,
            "traceback": tb_str,
        }

    # loguru nests keyword arguments passed as extra={...} under "extra"
    extra = dict(record.get("extra", {}))
    nested = extra.pop("extra", None)
    if isinstance(nested, dict):
        extra.update(nested)
    for key, value in extra.items():
        if not key.startswith("_"):
            log_entry[key] = value

    return json.dumps(log_entry, default=str)


def _json_sink(message: Any) -> None:
    """Sink that writes serialized JSON to stdout."""
    sys.stdout.write(_cloud_logging_serializer(message.record) + "\n")
    sys.stdout.flush()


def configure_logging(*, is_production: bool, log_level: str = "INFO") -> None:
    """Configure loguru for the application.

    Args:
        is_production: If True, output JSON for Cloud Logging. If False, use
            human-readable colored output for development.
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    logger.remove()

    if is_production:
        logger.add(
            _json_sink,
            level=log_level,
            format="{message}",  # Format is handled by the sink
            backtrace=False,
            diagnose=False,  # Don't include variable values in production
        )
    else:
        logger.add(
            sys.stderr,
            level=log_level,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "<level>{message}</level>"
                "{exception}"
            ),
            colorize=True,
            backtrace=True,
            diagnose=True,
        )

    _intercept_standard_logging(log_level)


def _intercept_standard_logging(log_level: str) -> None:
    """Route standard library logging (uvicorn, httpx) to loguru."""

    class InterceptHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            try:
                level = logger.level(record.levelname).name
            except ValueError:
                level = record.levelno

            # Find caller from where the logged message originated
            frame, depth = logging.currentframe(), 2
            while frame and frame.f_code.co_filename == logging.__file__:
                frame = frame.f_back
                depth += 1

            logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())

    logging.basicConfig(handlers=[InterceptHandler()], level=log_level, force=True)

    for name in ["uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore"]:
        logging.getLogger(name).setLevel(log_level)
        logging.getLogger(name).handlers = [InterceptHandler()]


def state_prefix(state: str | None) -> str | None:
    """Loggable prefix of a correlation key."""
    return state[:STATE_PREFIX_LENGTH] if state else None


# =============================================================================
# Audit Logging
# =============================================================================


def audit_token_stored(state: str) -> None:
    """Log when a provider token is parked for a CLI."""
    logger.info(
        "Token stored",
        extra={"audit_event": "token_stored", "state_prefix": state_prefix(state)},
    )


def audit_token_consumed(state: str) -> None:
    """Log the single successful retrieval of a token."""
    logger.info(
        "Token consumed",
        extra={"audit_event": "token_consumed", "state_prefix": state_prefix(state)},
    )


def audit_exchange_failed(state: str | None, reason: str) -> None:
    """Log a failed authorization-code exchange."""
    logger.warning(
        "Token exchange failed",
        extra={
            "audit_event": "exchange_failed",
            "state_prefix": state_prefix(state),
            "reason": reason,
        },
    )


__all__ = [
    "logger",
    "configure_logging",
    "state_prefix",
    "audit_token_stored",
    "audit_token_consumed",
    "audit_exchange_failed",
]
