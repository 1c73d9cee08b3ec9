"""CLI entrypoint for ingest-foundry.

This file wires together:

- Config loading and validation
- Request governor, warehouse sink and failed-job store
- Batch orchestration of (entity x data kind) tasks
- Failed-job replay (--process-failed)
- API usage monitoring and the JSON run log

Exit status is 0 whenever a run completes, even with failed tasks (they are
in the failed-job queue). It is 1 only when the run cannot start.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from ingest import __version__
from ingest.lib.circuit_breaker import CircuitBreakerRegistry
from ingest.lib.datakinds import DataKind
from ingest.lib.errors import ConfigurationError, IngestError
from ingest.lib.failed_jobs import (
    FailedJobStore,
    FileFailedJobStore,
    MemoryFailedJobStore,
    PostgresFailedJobStore,
)
from ingest.lib.governor import DailyUsageStore, RequestGovernor
from ingest.lib.observability import ApiUsageMonitor, setup_logging
from ingest.lib.orchestrator import RUN_MODES, BatchOrchestrator, OrchestratorConfig
from ingest.lib.resilience import ResilienceLayer
from ingest.lib.settings import IngestSettings, load_settings
from ingest.lib.sink import Sink, create_sink

logger = logging.getLogger(__name__)

RUN_LOG_FILENAME = "update_log.json"
DAILY_USAGE_FILENAME = "daily_usage.json"


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Rate-governed batch ingestion from a metered API into a warehouse",
    )
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--env-file", help="Path to a .env file (default: search from cwd)")
    parser.add_argument(
        "--mode",
        choices=RUN_MODES,
        help="incremental (short lookback) or full (long lookback) run",
    )
    parser.add_argument("--lookback-days", type=int, help="Override the mode's lookback window")
    parser.add_argument("--entities", help="Comma-separated entities (overrides config)")
    parser.add_argument("--data-kinds", help="Comma-separated data kind names to run")
    parser.add_argument("--batch-size", type=int, help="Tasks dispatched concurrently per batch")
    parser.add_argument(
        "--process-failed",
        action="store_true",
        help="Retry due failed jobs instead of running the worklist",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and print the task plan without calling the API",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log output format",
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        verbose=args.verbose,
        json_format=args.log_format == "json",
        log_file=args.log_file,
    )

    runner = IngestRunner(args)
    return runner.execute()


class IngestRunner:
    """Encapsulates CLI workflows (dry-run, run, failed-job replay)."""

    def __init__(self, args: argparse.Namespace) -> None:
        self.args = args
        self.orchestrator: Optional[BatchOrchestrator] = None

    def execute(self) -> int:
        try:
            settings = self._load_settings()
        except ConfigurationError as exc:
            logger.error("%s", exc)
            return 1

        if self.args.dry_run:
            return self._dry_run(settings)

        if not settings.api.api_key:
            logger.error("No API key configured; set api.api_key or FMP_API_KEY")
            return 1

        try:
            return asyncio.run(self._run(settings))
        except IngestError as exc:
            logger.error("Run could not start: %s", exc, extra={"failure": exc.to_dict()})
            return 1

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _load_settings(self) -> IngestSettings:
        settings = load_settings(self.args.config, env_file=self.args.env_file)

        mode = self.args.mode or settings.orchestrator.mode
        if mode != settings.orchestrator.mode and self.args.lookback_days is None:
            base = OrchestratorConfig.for_mode(mode)
            orchestrator = settings.orchestrator.with_overrides(mode=mode, lookback_days=base.lookback_days)
        else:
            orchestrator = settings.orchestrator.with_overrides(mode=mode)

        try:
            orchestrator = orchestrator.with_overrides(
                lookback_days=self.args.lookback_days,
                batch_size=self.args.batch_size,
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        if orchestrator.run_log is None:
            orchestrator = orchestrator.with_overrides(run_log=settings.state_dir / RUN_LOG_FILENAME)
        settings.orchestrator = orchestrator

        entities = _split(self.args.entities)
        if entities is not None:
            settings.entities = entities

        wanted = _split(self.args.data_kinds)
        if wanted is not None:
            known = {k.name: k for k in settings.data_kinds}
            unknown = [name for name in wanted if name not in known]
            if unknown:
                raise ConfigurationError(
                    "Unknown data kind(s)",
                    field="data_kinds",
                    issues=[f"{name} (known: {', '.join(known)})" for name in unknown],
                )
            settings.data_kinds = [known[name] for name in wanted]

        if not settings.entities and not self.args.process_failed:
            raise ConfigurationError("No entities to process; set entities or --entities")

        return settings

    def _dry_run(self, settings: IngestSettings) -> int:
        config = settings.orchestrator
        kinds: List[DataKind] = settings.data_kinds
        tasks = len(settings.entities) * len(kinds)
        print(f"Mode: {config.mode} (lookback {config.lookback_days} days)")
        print(f"Entities: {len(settings.entities)}")
        print(f"Data kinds: {', '.join(k.name for k in kinds)}")
        print(f"Total tasks: {tasks} in batches of {config.batch_size}")
        print(f"Sink: {settings.sink.type}")
        print(f"Request budget: {settings.api.requests_per_minute}/min, {settings.api.requests_per_second}/s")
        low = tasks / settings.api.requests_per_second if settings.api.requests_per_second else 0
        print(f"Estimated minimum time: {low:.0f}s")
        return 0

    def _failed_job_store(self, settings: IngestSettings) -> FailedJobStore:
        jobs = settings.failed_jobs
        if jobs.backend == "postgres":
            return PostgresFailedJobStore(settings.sink.dsn, jobs.retry_delay_seconds)
        if jobs.backend == "memory":
            return MemoryFailedJobStore(jobs.retry_delay_seconds)
        return FileFailedJobStore(settings.state_dir, jobs.retry_delay_seconds)

    def _install_stop_handler(self, orchestrator: BatchOrchestrator) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, orchestrator.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform; Ctrl-C cancels instead
                logger.debug("Signal handlers unavailable for %s", sig)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, settings: IngestSettings) -> int:
        sink: Sink = await asyncio.to_thread(create_sink, settings.sink.type, settings.sink.dsn)
        store = self._failed_job_store(settings)
        breakers = CircuitBreakerRegistry(
            threshold=settings.circuit_breaker.threshold,
            timeout=settings.circuit_breaker.timeout_seconds,
        )
        resilience = ResilienceLayer(store, policies=settings.retry, breakers=breakers)

        api = settings.api
        governor = RequestGovernor(
            api.api_key,
            base_url=api.base_url,
            requests_per_minute=api.requests_per_minute,
            requests_per_second=api.requests_per_second,
            daily_limit=api.daily_limit,
            cooldown_seconds=api.cooldown_seconds,
            timeout=api.timeout,
            usage_store=DailyUsageStore(settings.state_dir / DAILY_USAGE_FILENAME),
        )

        try:
            async with governor:
                orchestrator = BatchOrchestrator(governor, sink, resilience)
                self.orchestrator = orchestrator
                self._install_stop_handler(orchestrator)

                if self.args.process_failed:
                    report = await resilience.process_failed_jobs(
                        orchestrator.retry_handlers(settings.data_kinds),
                        limit=settings.failed_jobs.batch_limit,
                    )
                    logger.info("Failed job replay: %s", report.to_dict())
                    return 0

                async with ApiUsageMonitor(governor, settings.orchestrator.progress_interval_seconds):
                    summary = await orchestrator.run(
                        settings.entities, settings.data_kinds, settings.orchestrator
                    )

                if summary.failed:
                    logger.warning(
                        "%d task(s) failed and were queued for retry (run with --process-failed)",
                        summary.failed,
                    )
                return 0
        finally:
            await asyncio.to_thread(sink.close)
            if isinstance(store, PostgresFailedJobStore):
                await asyncio.to_thread(store.close)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        logger.error(f"Fatal error: {exc}", exc_info=True)
        sys.exit(1)
