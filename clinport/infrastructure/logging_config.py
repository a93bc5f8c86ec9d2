"""Structured logging configuration.

This module provides structured logging with JSON formatting for production
environments and human-readable formatting for development, plus a sampled
logger for per-record messages that would otherwise flood the log on large
imports.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Parameters:
            record: Log record to format

        Returns:
            JSON string representation of log record
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
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

        # Add extra fields if present
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def setup_logging(use_json: bool = False, log_level: str = "INFO") -> None:
    """Setup application logging.

    Parameters:
        use_json: Use JSON formatting (for production)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if use_json:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logging.getLogger("duckdb").setLevel(logging.WARNING)


class SampledLogger:
    """Rate-limited wrapper around a logger.

    Messages are grouped by a caller-chosen key. The first ``burst`` messages
    of a key are emitted; after that only every ``every``-th occurrence is,
    annotated with the running count. Counts live on the instance, so a fresh
    SampledLogger per import gives per-import sampling.

    Parameters:
        logger: Underlying logger
        burst: Messages emitted per key before sampling starts
        every: Sampling interval after the burst

    Example:
        ```python
        sampled = SampledLogger(logging.getLogger(__name__), burst=3, every=50)
        for row in rows:
            sampled.warning("unknown_concept", "Unknown concept %s", row.concept)
        sampled.flush_summary()
        ```
    """

    def __init__(self, logger: Optional[logging.Logger] = None, burst: int = 5, every: int = 100):
        if every < 1:
            raise ValueError("every must be >= 1")
        self.logger = logger or logging.getLogger("clinport")
        self.burst = max(burst, 0)
        self.every = every
        self._counts: Dict[str, int] = {}
        self._suppressed: Dict[str, int] = {}

    def log(self, level: int, key: str, msg: str, *args: Any, **kwargs: Any) -> bool:
        """Log ``msg`` unless sampling suppresses it.

        Returns:
            bool: True if the message was emitted
        """
        count = self._counts.get(key, 0) + 1
        self._counts[key] = count

        if count > self.burst and (count - self.burst) % self.every != 0:
            self._suppressed[key] = self._suppressed.get(key, 0) + 1
            return False

        if count > self.burst:
            msg = f"{msg} [occurrence {count} of '{key}']"
        extra = kwargs.pop("extra", {})
        extra.setdefault("extra_fields", {"sample_key": key, "occurrence": count})
        self.logger.log(level, msg, *args, extra=extra, **kwargs)
        return True

    def debug(self, key: str, msg: str, *args: Any, **kwargs: Any) -> bool:
        return self.log(logging.DEBUG, key, msg, *args, **kwargs)

    def info(self, key: str, msg: str, *args: Any, **kwargs: Any) -> bool:
        return self.log(logging.INFO, key, msg, *args, **kwargs)

    def warning(self, key: str, msg: str, *args: Any, **kwargs: Any) -> bool:
        return self.log(logging.WARNING, key, msg, *args, **kwargs)

    def error(self, key: str, msg: str, *args: Any, **kwargs: Any) -> bool:
        return self.log(logging.ERROR, key, msg, *args, **kwargs)

    def count(self, key: str) -> int:
        return self._counts.get(key, 0)

    def suppressed(self, key: Optional[str] = None) -> int:
        """Number of suppressed messages for a key, or in total."""
        if key is not None:
            return self._suppressed.get(key, 0)
        return sum(self._suppressed.values())

    def flush_summary(self) -> None:
        """Log one summary line per key that had messages suppressed."""
        for key, suppressed in sorted(self._suppressed.items()):
            self.logger.info(
                f"Suppressed {suppressed} of {self._counts[key]} '{key}' messages"
            )
        self._suppressed.clear()
