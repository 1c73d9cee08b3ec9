"""Batch orchestration of (entity x data kind) ingestion tasks.

For each data kind, entities are split into fixed-size batches. Every task
in a batch runs concurrently through the resilience layer; the next batch
starts only after the whole batch settles and a short pause. Task failures
are counted and reported but never stop the run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import date
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from ingest.lib.constants import (
    DEFAULT_BATCH_PAUSE_SECONDS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_FULL_LOOKBACK_DAYS,
    DEFAULT_INCREMENTAL_LOOKBACK_DAYS,
    DEFAULT_PROGRESS_INTERVAL_SECONDS,
)
from ingest.lib.datakinds import DataKind, LookbackWindow
from ingest.lib.governor import RequestGovernor
from ingest.lib.progress import BatchProgress, FinalSummary, append_run_log
from ingest.lib.resilience import OperationOutcome, ResilienceLayer
from ingest.lib.sink import Sink

logger = logging.getLogger(__name__)

__all__ = ["BatchOrchestrator", "OrchestratorConfig", "RUN_MODES"]

RUN_MODES = ("incremental", "full")

_MODE_LOOKBACK = {
    "incremental": DEFAULT_INCREMENTAL_LOOKBACK_DAYS,
    "full": DEFAULT_FULL_LOOKBACK_DAYS,
}


@dataclass(frozen=True)
class OrchestratorConfig:
    """Run parameters. Modes differ only in their lookback default."""

    mode: str = "incremental"
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_pause_seconds: float = DEFAULT_BATCH_PAUSE_SECONDS
    lookback_days: int = DEFAULT_INCREMENTAL_LOOKBACK_DAYS
    progress_interval_seconds: float = DEFAULT_PROGRESS_INTERVAL_SECONDS
    run_log: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.mode not in RUN_MODES:
            raise ValueError(f"mode must be one of {RUN_MODES}, got {self.mode!r}")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.batch_pause_seconds < 0:
            raise ValueError("batch_pause_seconds must be >= 0")
        if self.lookback_days <= 0:
            raise ValueError("lookback_days must be > 0")

    @classmethod
    def for_mode(cls, mode: str = "incremental", **overrides: Any) -> "OrchestratorConfig":
        """Config with the mode's default lookback; None overrides are ignored."""
        if mode not in _MODE_LOOKBACK:
            raise ValueError(f"mode must be one of {RUN_MODES}, got {mode!r}")
        values = {k: v for k, v in overrides.items() if v is not None}
        values.setdefault("lookback_days", _MODE_LOOKBACK[mode])
        return cls(mode=mode, **values)

    def with_overrides(self, **overrides: Any) -> "OrchestratorConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


class BatchOrchestrator:
    """Drives a worklist to completion against the shared request budget.

    Example:
        orchestrator = BatchOrchestrator(governor, sink, resilience)
        summary = await orchestrator.run(["AAPL", "MSFT"], DEFAULT_DATA_KINDS)
    """

    def __init__(
        self,
        governor: RequestGovernor,
        sink: Sink,
        resilience: ResilienceLayer,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.governor = governor
        self.sink = sink
        self.resilience = resilience
        self._sleep = sleep
        self.clock = clock
        self._today = today
        self._stop_requested = False
        self.progress: Optional[BatchProgress] = None

    def request_stop(self) -> None:
        """Stop at the next batch boundary; dispatched tasks still finish."""
        if not self._stop_requested:
            logger.warning("Stop requested; finishing the current batch")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _window(self, lookback_days: int) -> LookbackWindow:
        today = self._today() if self._today else None
        return LookbackWindow.last_days(lookback_days, today=today)

    def _task(self, kind: DataKind, entity: str, lookback_days: int) -> Callable[[], Awaitable[int]]:
        window = self._window(lookback_days)

        async def load() -> int:
            return await kind.load(entity, self.governor, self.sink, window)

        return load

    async def _run_task(self, kind: DataKind, entity: str, lookback_days: int) -> OperationOutcome:
        payload = {"entity": entity, "lookback_days": lookback_days}
        return await self.resilience.execute(
            kind.name, self._task(kind, entity, lookback_days), payload, on_not_found=int
        )

    def retry_handlers(
        self, data_kinds: Sequence[DataKind]
    ) -> Dict[str, Callable[[Any], Awaitable[int]]]:
        """Handlers for ``ResilienceLayer.process_failed_jobs`` keyed by kind name."""
        handlers: Dict[str, Callable[[Any], Awaitable[int]]] = {}
        for kind in data_kinds:

            async def handler(payload: Dict[str, Any], kind: DataKind = kind) -> int:
                lookback = int(payload.get("lookback_days", DEFAULT_INCREMENTAL_LOOKBACK_DAYS))
                return await self._task(kind, payload["entity"], lookback)()

            handlers[kind.name] = handler
        return handlers

    async def run(
        self,
        entities: Sequence[str],
        data_kinds: Sequence[DataKind],
        config: Optional[OrchestratorConfig] = None,
    ) -> FinalSummary:
        """Run every (entity, data kind) task and return the final summary.

        Args:
            entities: Entities to load (e.g. ticker symbols)
            data_kinds: Kinds loaded for every entity, one after another
            config: Batch size, pause, lookback and run log (defaults apply)

        Returns:
            FinalSummary of the run. Task failures are counted and queued,
            never raised.
        """
        config = config or OrchestratorConfig()
        entities = list(entities)
        data_kinds = list(data_kinds)
        self._stop_requested = False

        progress = BatchProgress(total_tasks=len(entities) * len(data_kinds), clock=self.clock)
        self.progress = progress
        touched: List[str] = []
        processed: Set[str] = set()
        stopped_early = False
        last_report = self.clock()

        batches = [entities[i:i + config.batch_size] for i in range(0, len(entities), config.batch_size)]
        total_batches = len(batches) * len(data_kinds)
        batches_done = 0

        logger.info(
            "Starting %s run: %d entities x %d data kinds = %d tasks (batch size %d)",
            config.mode,
            len(entities),
            len(data_kinds),
            progress.total_tasks,
            config.batch_size,
        )

        for kind in data_kinds:
            if self._stop_requested:
                stopped_early = True
                break

            logger.info("[%s] Loading for %d entities", kind.name.upper(), len(entities))
            touched.append(kind.name)

            for batch in batches:
                if self._stop_requested:
                    stopped_early = True
                    break

                outcomes = await asyncio.gather(
                    *(self._run_task(kind, entity, config.lookback_days) for entity in batch)
                )
                for entity, outcome in zip(batch, outcomes):
                    processed.add(entity)
                    # A breaker fast-fail makes no call
                    calls = outcome.attempts
                    if outcome.succeeded:
                        progress.record_success(calls)
                    else:
                        progress.record_failure(
                            entity, kind.name, outcome.error_message or "unknown error", calls
                        )

                batches_done += 1
                now = self.clock()
                if config.progress_interval_seconds and now - last_report >= config.progress_interval_seconds:
                    progress.log()
                    last_report = now

                if batches_done < total_batches and config.batch_pause_seconds > 0:
                    await self._sleep(config.batch_pause_seconds)

            if stopped_early:
                break
            progress.log()
            last_report = self.clock()

        summary = FinalSummary.from_progress(
            progress,
            mode=config.mode,
            categories=touched,
            entities_processed=len(processed),
            stopped_early=stopped_early,
        )
        logger.info("\n%s", summary.render_report())

        if config.run_log is not None:
            append_run_log(config.run_log, summary)

        return summary
