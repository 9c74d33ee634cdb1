"""Structured logging configuration for Telegram Feed Relay."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# Attributes every LogRecord carries; anything else arrived through `extra`
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName"}

COMPONENTS = (
    "main",
    "engine",
    "feed_processor",
    "deduplicator",
    "telegram_publisher",
    "store",
    "commands",
    "secrets_manager",
    "cloudwatch_metrics",
)


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ExecutionLogger:
    """Logger with execution context and structured logging."""

    def __init__(self, execution_id: str, component: str = "main"):
        """Initialize execution logger.

        Args:
            execution_id: Unique identifier for this execution
            component: Component name (e.g., 'engine', 'telegram_publisher')
        """
        self.execution_id = execution_id
        self.component = component
        self.logger = logging.getLogger(f"feed_relay.{component}")
        self.start_time: datetime | None = None

    def _log_with_context(
        self, level: int, message: str, exc_info: bool = False, **kwargs
    ) -> None:
        extra = {
            "execution_id": self.execution_id,
            "component": self.component,
            **kwargs,
        }
        self.logger.log(level, message, exc_info=exc_info, extra=extra)

    def info(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.ERROR, message, **kwargs)

    def exception(self, message: str, **kwargs) -> None:
        """Log an error together with the active exception traceback."""
        self._log_with_context(logging.ERROR, message, exc_info=True, **kwargs)

    def debug(self, message: str, **kwargs) -> None:
        self._log_with_context(logging.DEBUG, message, **kwargs)

    def log_execution_start(self, **kwargs) -> None:
        """Log execution start with timestamp."""
        self.start_time = datetime.now(UTC)
        self.info(
            f"Starting {self.component} execution",
            execution_start=self.start_time.isoformat(),
            **kwargs,
        )

    def log_execution_end(self, success: bool = True, **kwargs) -> None:
        """Log execution end with timestamp and duration."""
        end_time = datetime.now(UTC)

        duration_seconds = None
        if self.start_time:
            duration_seconds = (end_time - self.start_time).total_seconds()

        self.info(
            f"Completed {self.component} execution",
            execution_end=end_time.isoformat(),
            execution_duration_seconds=duration_seconds,
            execution_success=success,
            **kwargs,
        )

    def log_feed_check(self, feed_url: str, history_size: int) -> None:
        self.info(
            f"Checking feed: {feed_url} (loaded {history_size} history items)",
            feed_url=feed_url,
            history_size=history_size,
        )

    def log_item_delivery(
        self, item_title: str, feed_url: str, delivered: int, failed: int
    ) -> None:
        """Log the outcome of fanning one item out to its targets."""
        level = logging.INFO if delivered else logging.WARNING
        self._log_with_context(
            level,
            f"Item delivered to {delivered} target(s), {failed} failed: {item_title}",
            item_title=item_title,
            feed_url=feed_url,
            delivered=delivered,
            failed=failed,
        )

    def log_metrics(self, metrics: dict[str, Any]) -> None:
        self.info("Execution metrics", metrics=metrics)


def setup_structured_logging(log_level: str = "INFO") -> None:
    """Setup structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    logging.getLogger("feed_relay").setLevel(level)
    for component in COMPONENTS:
        logger = logging.getLogger(f"feed_relay.{component}")
        logger.setLevel(level)
        logger.propagate = True


def create_execution_logger(
    component: str, execution_id: str | None = None
) -> ExecutionLogger:
    """Create an execution logger for a component.

    Args:
        component: Component name
        execution_id: Optional execution ID (will generate one if not provided)

    Returns:
        ExecutionLogger instance
    """
    if not execution_id:
        execution_id = f"exec_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"

    return ExecutionLogger(execution_id, component)
