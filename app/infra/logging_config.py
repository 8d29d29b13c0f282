# app/infra/logging_config.py
import logging
import sys
import json
from datetime import datetime, timezone

# Record attributes copied into structured output when present
CONTEXT_FIELDS = ("job_id", "agent_id", "actor_id", "request_id")


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for production environments"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data)


class ConsoleFormatter(logging.Formatter):
    """Human-readable format for development"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        # Build context string
        context_parts = []
        if hasattr(record, "job_id"):
            context_parts.append(f"job={record.job_id}")
        if hasattr(record, "agent_id") and record.agent_id:
            context_parts.append(f"agent={record.agent_id}")
        if getattr(record, "actor_id", None):
            context_parts.append(f"actor={mask_identifier(record.actor_id)}")
        if hasattr(record, "request_id"):
            context_parts.append(f"req={record.request_id}")

        context = f" [{' '.join(context_parts)}]" if context_parts else ""

        line = (
            f"{color}[{timestamp}] {record.levelname:8}{reset} "
            f"{record.name}{context} - {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure application logging

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: If True, use JSON format (for production)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if use_json:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ConsoleFormatter())

    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(name)


# Context-aware logging helpers
class LogContext:
    """Add context to log records"""

    def __init__(
            self,
            logger: logging.Logger,
            job_id: str | None = None,
            agent_id: str | None = None,
            actor_id: str | None = None,
            request_id: str | None = None,
    ):
        self.logger = logger
        self.context = {
            k: v for k, v in {
                "job_id": job_id,
                "agent_id": agent_id,
                "actor_id": actor_id,
                "request_id": request_id,
            }.items() if v is not None
        }

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = kwargs.pop("extra", {})
        extra.update(self.context)
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._log(logging.CRITICAL, msg, *args, **kwargs)


def mask_coordinates(lat: float, lon: float) -> str:
    """Mask GPS coordinates for logging to prevent location spoofing.

    Example: ``mask_coordinates(48.8566, 2.3522)`` → ``"48.9**, 2.4**"``

    Shows only the first decimal digit (roughly ±10 km precision),
    which is enough for debugging without exposing exact user location.
    """
    return f"{lat:.1f}**, {lon:.1f}**"


def mask_identifier(value: str) -> str:
    """Shorten user identifiers in console output: ``"uid_abcdef123"`` → ``"uid_****23"``."""
    value = str(value)
    if len(value) > 6:
        return value[:4] + "****" + value[-2:]
    return value
