"""Logging setup and API usage monitoring.

Logs are plain stdlib logging, optionally rendered as JSON for log
aggregation. ``ApiUsageMonitor`` periodically logs the governor's usage
snapshot and trims its call log while a run is in progress.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from ingest.lib.constants import DEFAULT_PROGRESS_INTERVAL_SECONDS

if TYPE_CHECKING:
    from ingest.lib.governor import RequestGovernor

logger = logging.getLogger(__name__)

__all__ = [
    "ApiUsageMonitor",
    "JSONFormatter",
    "setup_logging",
]

_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}


class JSONFormatter(logging.Formatter):
    """Formatter that renders log records as JSON."""

    def __init__(self, exclude_fields: Optional[List[str]] = None):
        super().__init__()
        self.exclude_fields = exclude_fields or []

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        extra_attrs = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RESERVED_ATTRS and k not in self.exclude_fields
        }
        if extra_attrs:
            payload["extra"] = extra_attrs

        return json.dumps(payload, default=str)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure the root logger with optional JSON formatting."""
    level = logging.DEBUG if verbose else logging.INFO

    formatter = JSONFormatter() if json_format else logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Request lines from httpx would drown out the progress output
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class ApiUsageMonitor:
    """Background task logging governor usage every ``interval`` seconds.

    Example:
        async with ApiUsageMonitor(governor, interval=30):
            await orchestrator.run(...)
    """

    def __init__(
        self,
        governor: "RequestGovernor",
        interval: float = DEFAULT_PROGRESS_INTERVAL_SECONDS,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.governor = governor
        self.interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.reports = 0

    def report(self) -> Dict[str, Any]:
        """Log one usage snapshot and trim the governor call log."""
        stats = self.governor.snapshot()
        logger.info(
            "API usage: %d/min (%d remaining), ok=%d failed=%d today=%d avg=%dms%s",
            stats["calls_in_last_minute"],
            stats["remaining_this_minute"],
            stats["success_count"],
            stats["failure_count"],
            stats["calls_today"],
            stats["avg_response_ms"],
            " [cooldown]" if stats["in_cooldown"] else "",
            extra={"api_usage": stats},
        )
        self.governor.cleanup_logs()
        self.reports += 1
        return stats

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval)
            self.report()

    def start(self) -> None:
        if self._task is None and self.interval > 0:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def __aenter__(self) -> "ApiUsageMonitor":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
