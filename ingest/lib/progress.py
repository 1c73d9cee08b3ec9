"""Progress tracking and run reporting for batch ingestion."""

from __future__ import annotations

import json
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from ingest.lib.constants import DEFAULT_RECENT_ERRORS, DEFAULT_RUN_LOG_KEEP

logger = logging.getLogger(__name__)

__all__ = [
    "BatchProgress",
    "FinalSummary",
    "TaskError",
    "append_run_log",
    "format_duration",
]

BAR_WIDTH = 30
ERROR_GROUP_PREFIX = 50


def format_duration(seconds: float) -> str:
    """Render seconds as ``Xm Ys``."""
    total = max(0, int(round(seconds)))
    minutes, secs = divmod(total, 60)
    return f"{minutes}m {secs}s"


@dataclass(frozen=True)
class TaskError:
    entity: str
    data_kind: str
    message: str

    def __str__(self) -> str:
        return f"{self.entity} [{self.data_kind}]: {self.message}"


@dataclass
class BatchProgress:
    """Counters for one orchestrator run.

    Only the most recent errors are kept for display; every error still
    counts toward the grouped summary in the final report.
    """

    total_tasks: int
    clock: Callable[[], float] = time.monotonic
    max_recent_errors: int = DEFAULT_RECENT_ERRORS
    completed_tasks: int = 0
    successful_tasks: int = 0
    failed_tasks: int = 0
    api_calls_used: int = 0
    start_time: float = field(default=0.0)
    recent_errors: Deque[TaskError] = field(default_factory=deque, init=False)
    error_groups: Counter = field(default_factory=Counter, init=False)

    def __post_init__(self) -> None:
        self.recent_errors = deque(maxlen=self.max_recent_errors)
        if not self.start_time:
            self.start_time = self.clock()

    def record_success(self, api_calls: int = 1) -> None:
        self.completed_tasks += 1
        self.successful_tasks += 1
        self.api_calls_used += api_calls

    def record_failure(self, entity: str, data_kind: str, message: str, api_calls: int = 1) -> None:
        self.completed_tasks += 1
        self.failed_tasks += 1
        self.api_calls_used += api_calls
        self.recent_errors.append(TaskError(entity, data_kind, message))
        self.error_groups[message[:ERROR_GROUP_PREFIX]] += 1

    @property
    def elapsed(self) -> float:
        return self.clock() - self.start_time

    @property
    def remaining_tasks(self) -> int:
        return max(0, self.total_tasks - self.completed_tasks)

    def eta_seconds(self) -> Optional[float]:
        """elapsed / completed * remaining, or None before the first task."""
        if self.completed_tasks == 0:
            return None
        return self.elapsed / self.completed_tasks * self.remaining_tasks

    @property
    def eta_text(self) -> str:
        eta = self.eta_seconds()
        return "Calculating..." if eta is None else format_duration(eta)

    @property
    def percentage(self) -> int:
        if self.total_tasks == 0:
            return 0
        return round(self.completed_tasks / self.total_tasks * 100)

    def bar(self, width: int = BAR_WIDTH) -> str:
        filled = 0 if self.total_tasks == 0 else round(width * self.completed_tasks / self.total_tasks)
        filled = min(width, filled)
        return "█" * filled + "░" * (width - filled)

    def render(self) -> str:
        lines = [
            "=" * 60,
            "Loading Progress",
            "=" * 60,
            f"Progress: {self.bar()} {self.percentage}%",
            f"Tasks: {self.completed_tasks}/{self.total_tasks}",
            f"Success: {self.successful_tasks} | Failed: {self.failed_tasks}",
            f"Est. Time Remaining: {self.eta_text}",
            f"API Calls Used: ~{self.api_calls_used}",
        ]
        if self.recent_errors:
            lines.append("Recent Errors:")
            lines.extend(f"  - {error}" for error in self.recent_errors)
        return "\n".join(lines)

    def log(self) -> None:
        logger.info("\n%s", self.render())


@dataclass
class FinalSummary:
    """Terminal report of an orchestrator run."""

    mode: str
    elapsed_seconds: float
    total_requests: int
    successful: int
    failed: int
    total_tasks: int
    categories_touched: List[str]
    entities_processed: int
    stopped_early: bool = False
    recent_errors: List[str] = field(default_factory=list)
    error_groups: Dict[str, int] = field(default_factory=dict)
    finished_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @classmethod
    def from_progress(
        cls,
        progress: BatchProgress,
        *,
        mode: str,
        categories: List[str],
        entities_processed: int,
        stopped_early: bool,
    ) -> "FinalSummary":
        return cls(
            mode=mode,
            elapsed_seconds=progress.elapsed,
            total_requests=progress.api_calls_used,
            successful=progress.successful_tasks,
            failed=progress.failed_tasks,
            total_tasks=progress.total_tasks,
            categories_touched=list(categories),
            entities_processed=entities_processed,
            stopped_early=stopped_early,
            recent_errors=[str(e) for e in progress.recent_errors],
            error_groups=dict(progress.error_groups.most_common()),
        )

    @property
    def duration_minutes(self) -> float:
        return round(self.elapsed_seconds / 60, 2)

    @property
    def success_rate(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return self.successful / self.total_tasks * 100

    @property
    def calls_per_minute(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.total_requests / (self.elapsed_seconds / 60)

    def to_run_log_entry(self) -> Dict[str, Any]:
        return {
            "timestamp": self.finished_at,
            "mode": self.mode,
            "duration_minutes": self.duration_minutes,
            "total_requests": self.total_requests,
            "successful_updates": self.successful,
            "failed_updates": self.failed,
            "categories_updated": self.categories_touched,
            "symbols_processed": self.entities_processed,
            "stopped_early": self.stopped_early,
        }

    def render_report(self) -> str:
        lines = [
            "=" * 60,
            "BATCH LOADING STOPPED" if self.stopped_early else "BATCH LOADING COMPLETED",
            "=" * 60,
            f"Mode: {self.mode}",
            f"Total Time: {format_duration(self.elapsed_seconds)}",
            f"Tasks Completed: {self.successful + self.failed}/{self.total_tasks}",
            f"Success Rate: {self.success_rate:.1f}%",
            f"API Calls Used: ~{self.total_requests}",
            f"Average Speed: {self.calls_per_minute:.0f} calls/minute",
            f"Categories: {', '.join(self.categories_touched) or '-'}",
        ]
        if self.error_groups:
            lines.append(f"Total Errors: {self.failed}")
            lines.append("Error Summary:")
            lines.extend(
                f"  - {prefix}: {count} occurrences" for prefix, count in self.error_groups.items()
            )
        return "\n".join(lines)


def append_run_log(
    path: Union[str, Path],
    summary: FinalSummary,
    keep: int = DEFAULT_RUN_LOG_KEEP,
) -> List[Dict[str, Any]]:
    """Append the run summary to a JSON log, keeping the last ``keep`` runs."""
    log_path = Path(path)
    entries: List[Dict[str, Any]] = []
    if log_path.exists():
        try:
            loaded = json.loads(log_path.read_text())
            if isinstance(loaded, list):
                entries = loaded
        except json.JSONDecodeError as e:
            logger.warning("Run log %s is corrupt; starting a new one: %s", log_path, e)

    entries.append(summary.to_run_log_entry())
    entries = entries[-keep:]

    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.write_text(json.dumps(entries, indent=2))
    logger.info("Run summary appended to %s", log_path)
    return entries
