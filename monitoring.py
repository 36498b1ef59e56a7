"""
monitoring.py
-------------
MediFlow Clinical API Client - Error Reporting and Timing
----------------------------------------------------------
The logging / monitoring boundary of the API layer.  Two kinds of events
leave the core:

  - structured error reports (error + tags + extra context), written to the
    ``logging`` hierarchy and kept in a bounded in-process buffer so the most
    recent failures can be inspected while debugging;
  - performance timing spans, logged at DEBUG, or at WARNING when slower
    than the configured threshold.

Where the records end up (console, file, an external collector) is decided
by whoever configures ``logging``.

Project: MediFlow Clinical API Client
"""

from __future__ import annotations

import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS = 50


class ErrorLogger:
    """Reports errors with tags and context; remembers the last few reports."""

    def __init__(self, max_stored: int = MAX_STORED_ERRORS) -> None:
        self._stored: Deque[Dict[str, Any]] = deque(maxlen=max_stored)

    def log(
        self,
        error: BaseException,
        *,
        tags: Optional[Dict[str, str]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        tags = tags or {}
        extra = extra or {}
        info = {
            "message": str(error) or type(error).__name__,
            "error_type": type(error).__name__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tags": dict(tags),
            "extra": dict(extra),
        }
        self._stored.append(info)
        logger.error(
            "%s: %s (tags=%s)",
            tags.get("type", "error"),
            info["message"],
            tags,
            extra={"tags": tags, "context": extra},
        )
        return info

    def get_stored_errors(self) -> List[Dict[str, Any]]:
        return list(self._stored)

    def clear_stored_errors(self) -> None:
        self._stored.clear()


class PerformanceMonitor:
    """
    Named timing spans.

    Args:
        slow_threshold_ms: Spans longer than this are logged at WARNING.
        clock:             Seconds clock; ``time.perf_counter`` by default.
    """

    def __init__(
        self,
        slow_threshold_ms: float = 1000.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.slow_threshold_ms = slow_threshold_ms
        self._clock = clock

    def start_timing(self, label: str) -> float:
        logger.debug("timing start: %s", label)
        return self._clock()

    def end_timing(self, label: str, start: float) -> float:
        """Close the span opened at *start*; return its duration in milliseconds."""
        duration_ms = (self._clock() - start) * 1000.0
        if duration_ms > self.slow_threshold_ms:
            logger.warning("Slow operation: %s took %.1f ms", label, duration_ms)
        else:
            logger.debug("timing end: %s took %.1f ms", label, duration_ms)
        return duration_ms
