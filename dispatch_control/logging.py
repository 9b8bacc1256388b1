# dispatch_control/logging.py
"""
Structured logging for the Dispatch Approval Control Plane.

Every line is a JSON object with consistent fields:
- timestamp: ISO 8601
- level: DEBUG/INFO/WARNING/ERROR/CRITICAL
- logger: Module name
- message: Event name
- **kwargs: Additional structured fields

Usage:
    from dispatch_control.logging import get_logger
    logger = get_logger(__name__)
    logger.info("approval_created", request_id=str(request.id), action="CREATE_MACHINE")
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class StructuredLogFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "structured_data"):
            log_data.update(record.structured_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Source location only matters once something went wrong
        if record.levelno >= logging.ERROR:
            log_data["source"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """
    Thin wrapper around a stdlib logger that accepts keyword fields.

    Example:
        logger = get_logger(__name__)
        logger.warning("notification_failed", recipient_id=user_id, error=str(exc))
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, message: str, exc_info: bool = False, **kwargs):
        self._logger.log(
            level,
            message,
            exc_info=exc_info,
            extra={"structured_data": kwargs},
        )

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, exc_info: bool = False, **kwargs):
        self._log(logging.WARNING, message, exc_info=exc_info, **kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs):
        self._log(logging.ERROR, message, exc_info=exc_info, **kwargs)

    def critical(self, message: str, exc_info: bool = False, **kwargs):
        self._log(logging.CRITICAL, message, exc_info=exc_info, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log at ERROR with the active exception's traceback."""
        self._logger.exception(message, extra={"structured_data": kwargs})


# Global configuration state
_configured = False


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    log_file: Optional[str] = None,
):
    """
    Configure root logging for the application.

    Args:
        level: Log level name
        json_output: Emit JSON lines (True) or plain text (False)
        log_file: Optional file path to also write JSON logs to
    """
    global _configured
    if _configured:
        return
    _configured = True

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    if json_output:
        console_handler.setFormatter(StructuredLogFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            )
        )
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredLogFormatter())
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        StructuredLogger instance
    """
    if not _configured:
        from .settings import settings
        configure_logging(level=settings.log_level, json_output=settings.log_json)
    return StructuredLogger(name)


def get_governance_logger(component: str) -> StructuredLogger:
    """Get logger for an approval governance component."""
    return get_logger(f"dispatch_control.governance.{component}")


def get_api_logger() -> StructuredLogger:
    """Get logger for API routes."""
    return get_logger("dispatch_control.api")
