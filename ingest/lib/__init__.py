"""Ingestion core library.

Request governor, resilience layer and batch orchestrator for loading
timestamped records from a metered API into a warehouse.
"""

from ingest.lib.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    get_breaker_registry,
)
from ingest.lib.datakinds import DEFAULT_DATA_KINDS, DataKind, LookbackWindow, extract_records
from ingest.lib.env import expand_env_vars, load_env_file
from ingest.lib.errors import (
    ApiError,
    CircuitOpenError,
    ConfigurationError,
    ErrorKind,
    IngestError,
    SinkError,
)
from ingest.lib.failed_jobs import (
    FailedJob,
    FailedJobStore,
    FileFailedJobStore,
    MemoryFailedJobStore,
    PostgresFailedJobStore,
)
from ingest.lib.governor import DailyUsageStore, RequestGovernor
from ingest.lib.observability import ApiUsageMonitor, JSONFormatter, setup_logging
from ingest.lib.orchestrator import BatchOrchestrator, OrchestratorConfig
from ingest.lib.progress import BatchProgress, FinalSummary, append_run_log
from ingest.lib.resilience import (
    DEFAULT_POLICIES,
    FailedJobReport,
    ResilienceLayer,
    RetryPolicy,
    Severity,
    classify,
    get_resilience_layer,
    next_delay,
    severity,
    should_retry,
)
from ingest.lib.settings import IngestSettings, load_settings
from ingest.lib.sink import MemorySink, PostgresSink, Sink

__all__ = [
    "ApiError",
    "ApiUsageMonitor",
    "BatchOrchestrator",
    "BatchProgress",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "ConfigurationError",
    "DailyUsageStore",
    "DataKind",
    "DEFAULT_DATA_KINDS",
    "DEFAULT_POLICIES",
    "ErrorKind",
    "FailedJob",
    "FailedJobReport",
    "FailedJobStore",
    "FileFailedJobStore",
    "FinalSummary",
    "IngestError",
    "IngestSettings",
    "JSONFormatter",
    "LookbackWindow",
    "MemoryFailedJobStore",
    "MemorySink",
    "OrchestratorConfig",
    "PostgresFailedJobStore",
    "PostgresSink",
    "RequestGovernor",
    "ResilienceLayer",
    "RetryPolicy",
    "Severity",
    "Sink",
    "SinkError",
    "append_run_log",
    "classify",
    "expand_env_vars",
    "extract_records",
    "get_breaker_registry",
    "get_resilience_layer",
    "load_env_file",
    "load_settings",
    "next_delay",
    "setup_logging",
    "severity",
    "should_retry",
]
