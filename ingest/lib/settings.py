"""YAML configuration for ingestion runs.

Example YAML (ingest.yaml):
    api:
      api_key: ${FMP_API_KEY}
      requests_per_minute: 2800
      requests_per_second: 45

    sink:
      type: postgres
      dsn: ${INGEST_SINK_DSN}

    circuit_breaker:
      threshold: 5
      timeout_seconds: 60

    retry:
      server_error: {max_attempts: 4, initial_delay: 5, max_delay: 60}

    orchestrator:
      mode: incremental
      batch_size: 10

    entities: [AAPL, MSFT, GOOGL]

String values may reference environment variables; a ``.env`` file is
loaded first when present.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from ingest.lib.constants import (
    DEFAULT_BASE_URL,
    DEFAULT_BREAKER_TIMEOUT_SECONDS,
    DEFAULT_DAILY_LIMIT,
    DEFAULT_FAILED_JOB_BATCH_LIMIT,
    DEFAULT_FAILED_JOB_RETRY_DELAY_SECONDS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_REQUESTS_PER_MINUTE,
    DEFAULT_REQUESTS_PER_SECOND,
)
from ingest.lib.datakinds import DEFAULT_DATA_KINDS, DataKind, parse_data_kinds
from ingest.lib.env import (
    API_KEY_ENV,
    ENV_VAR_PATTERN,
    SINK_DSN_ENV,
    expand_value,
    load_env_file,
    resolve_state_dir,
)
from ingest.lib.errors import ConfigurationError, ErrorKind
from ingest.lib.orchestrator import RUN_MODES, OrchestratorConfig
from ingest.lib.resilience import DEFAULT_POLICIES, RetryPolicy

logger = logging.getLogger(__name__)

__all__ = [
    "ApiSettings",
    "BreakerSettings",
    "FailedJobSettings",
    "IngestSettings",
    "SinkSettings",
    "load_settings",
    "parse_retry_policies",
    "parse_settings",
]

SINK_TYPES = ("memory", "postgres")
FAILED_JOB_BACKENDS = ("file", "postgres", "memory")


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _unresolved(value: Optional[str]) -> Optional[str]:
    """None for empty strings or env references that did not expand."""
    if not value or ENV_VAR_PATTERN.search(value):
        return None
    return value


@dataclass
class ApiSettings:
    base_url: str = DEFAULT_BASE_URL
    api_key: Optional[str] = None
    timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE
    requests_per_second: int = DEFAULT_REQUESTS_PER_SECOND
    daily_limit: int = DEFAULT_DAILY_LIMIT
    cooldown_seconds: float = DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS


@dataclass
class SinkSettings:
    type: str = "memory"
    dsn: Optional[str] = None


@dataclass
class BreakerSettings:
    threshold: int = DEFAULT_FAILURE_THRESHOLD
    timeout_seconds: float = DEFAULT_BREAKER_TIMEOUT_SECONDS


@dataclass
class FailedJobSettings:
    backend: str = "file"
    retry_delay_seconds: float = DEFAULT_FAILED_JOB_RETRY_DELAY_SECONDS
    batch_limit: int = DEFAULT_FAILED_JOB_BATCH_LIMIT


@dataclass
class IngestSettings:
    """Fully parsed configuration for one process."""

    api: ApiSettings = field(default_factory=ApiSettings)
    sink: SinkSettings = field(default_factory=SinkSettings)
    state_dir: Path = field(default_factory=resolve_state_dir)
    circuit_breaker: BreakerSettings = field(default_factory=BreakerSettings)
    retry: Dict[ErrorKind, RetryPolicy] = field(default_factory=lambda: dict(DEFAULT_POLICIES))
    failed_jobs: FailedJobSettings = field(default_factory=FailedJobSettings)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    entities: List[str] = field(default_factory=list)
    data_kinds: List[DataKind] = field(default_factory=lambda: list(DEFAULT_DATA_KINDS))


def _section(raw: Mapping[str, Any], name: str, issues: List[str]) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        issues.append(f"{name} must be a mapping")
        return {}
    return value


def _number(
    section: Mapping[str, Any],
    key: str,
    default: Any,
    issues: List[str],
    prefix: str,
    *,
    integer: bool = False,
    minimum: float = 0,
) -> Any:
    if section.get(key) is None:
        return default
    value = _coerce_int(section[key]) if integer else _coerce_float(section[key])
    if value is None or value < minimum:
        issues.append(f"{prefix}.{key} must be a number >= {minimum}, got {section[key]!r}")
        return default
    return value


def parse_retry_policies(raw: Optional[Mapping[str, Any]]) -> Dict[ErrorKind, RetryPolicy]:
    """Per-kind retry overrides on top of the defaults."""
    policies = dict(DEFAULT_POLICIES)
    if not raw:
        return policies

    issues: List[str] = []
    for name, override in raw.items():
        try:
            kind = ErrorKind(str(name).lower())
        except ValueError:
            valid = ", ".join(k.value for k in ErrorKind)
            issues.append(f"retry.{name} is not a known error kind (valid: {valid})")
            continue
        if not isinstance(override, dict):
            issues.append(f"retry.{name} must be a mapping")
            continue

        base = policies[kind]
        prefix = f"retry.{name}"
        policies[kind] = RetryPolicy(
            max_attempts=_number(override, "max_attempts", base.max_attempts, issues, prefix, integer=True, minimum=1),
            initial_delay=_number(override, "initial_delay", base.initial_delay, issues, prefix),
            max_delay=_number(override, "max_delay", base.max_delay, issues, prefix),
            backoff_multiplier=_number(override, "backoff_multiplier", base.backoff_multiplier, issues, prefix, minimum=1),
        )

    if issues:
        raise ConfigurationError("Invalid retry configuration", field="retry", issues=issues)
    return policies


def parse_settings(raw: Optional[Mapping[str, Any]], config_dir: Optional[Path] = None) -> IngestSettings:
    """Validate a parsed YAML document and build IngestSettings."""
    raw = expand_value(dict(raw or {}))
    config_dir = config_dir or Path.cwd()
    issues: List[str] = []

    api_raw = _section(raw, "api", issues)
    api = ApiSettings(
        base_url=str(api_raw.get("base_url") or DEFAULT_BASE_URL),
        api_key=_unresolved(api_raw.get("api_key")) or _unresolved(os.environ.get(API_KEY_ENV)),
        timeout=_number(api_raw, "timeout", DEFAULT_REQUEST_TIMEOUT_SECONDS, issues, "api", minimum=0.1),
        requests_per_minute=_number(api_raw, "requests_per_minute", DEFAULT_REQUESTS_PER_MINUTE, issues, "api", integer=True, minimum=1),
        requests_per_second=_number(api_raw, "requests_per_second", DEFAULT_REQUESTS_PER_SECOND, issues, "api", integer=True),
        daily_limit=_number(api_raw, "daily_limit", DEFAULT_DAILY_LIMIT, issues, "api", integer=True),
        cooldown_seconds=_number(api_raw, "cooldown_seconds", DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS, issues, "api"),
    )

    sink_raw = _section(raw, "sink", issues)
    sink = SinkSettings(
        type=str(sink_raw.get("type", "memory")).lower(),
        dsn=_unresolved(sink_raw.get("dsn")) or _unresolved(os.environ.get(SINK_DSN_ENV)),
    )
    if sink.type not in SINK_TYPES:
        issues.append(f"sink.type must be one of {', '.join(SINK_TYPES)}, got {sink.type!r}")
    elif sink.type == "postgres" and not sink.dsn:
        issues.append(f"sink.dsn (or {SINK_DSN_ENV}) is required for the postgres sink")

    breaker_raw = _section(raw, "circuit_breaker", issues)
    breaker = BreakerSettings(
        threshold=_number(breaker_raw, "threshold", DEFAULT_FAILURE_THRESHOLD, issues, "circuit_breaker", integer=True, minimum=1),
        timeout_seconds=_number(breaker_raw, "timeout_seconds", DEFAULT_BREAKER_TIMEOUT_SECONDS, issues, "circuit_breaker"),
    )

    jobs_raw = _section(raw, "failed_jobs", issues)
    failed_jobs = FailedJobSettings(
        backend=str(jobs_raw.get("backend", "file")).lower(),
        retry_delay_seconds=_number(jobs_raw, "retry_delay_seconds", DEFAULT_FAILED_JOB_RETRY_DELAY_SECONDS, issues, "failed_jobs"),
        batch_limit=_number(jobs_raw, "batch_limit", DEFAULT_FAILED_JOB_BATCH_LIMIT, issues, "failed_jobs", integer=True, minimum=1),
    )
    if failed_jobs.backend not in FAILED_JOB_BACKENDS:
        issues.append(f"failed_jobs.backend must be one of {', '.join(FAILED_JOB_BACKENDS)}")
    elif failed_jobs.backend == "postgres" and not sink.dsn:
        issues.append("failed_jobs.backend postgres requires sink.dsn")

    orch_raw = _section(raw, "orchestrator", issues)
    mode = str(orch_raw.get("mode", "incremental")).lower()
    orchestrator = OrchestratorConfig()
    if mode not in RUN_MODES:
        issues.append(f"orchestrator.mode must be one of {', '.join(RUN_MODES)}, got {mode!r}")
    else:
        run_log = orch_raw.get("run_log")
        try:
            orchestrator = OrchestratorConfig.for_mode(
                mode,
                batch_size=_number(orch_raw, "batch_size", None, issues, "orchestrator", integer=True, minimum=1),
                batch_pause_seconds=_number(orch_raw, "batch_pause_seconds", None, issues, "orchestrator"),
                lookback_days=_number(orch_raw, "lookback_days", None, issues, "orchestrator", integer=True, minimum=1),
                progress_interval_seconds=_number(orch_raw, "progress_interval_seconds", None, issues, "orchestrator"),
                run_log=(config_dir / run_log) if run_log else None,
            )
        except ValueError as e:
            issues.append(f"orchestrator: {e}")

    entities = raw.get("entities") or []
    if not isinstance(entities, list) or not all(isinstance(e, str) and e for e in entities):
        issues.append("entities must be a list of non-empty strings")
        entities = []

    state_dir = raw.get("state_dir")
    resolved_state_dir = resolve_state_dir(config_dir / state_dir if state_dir else None)

    if issues:
        raise ConfigurationError("Invalid ingestion configuration", issues=issues)

    data_kinds = parse_data_kinds(raw["data_kinds"]) if "data_kinds" in raw else list(DEFAULT_DATA_KINDS)

    return IngestSettings(
        api=api,
        sink=sink,
        state_dir=resolved_state_dir,
        circuit_breaker=breaker,
        retry=parse_retry_policies(raw.get("retry")),
        failed_jobs=failed_jobs,
        orchestrator=orchestrator,
        entities=list(dict.fromkeys(entities)),
        data_kinds=data_kinds,
    )


def load_settings(
    path: Optional[Union[str, Path]] = None,
    *,
    env_file: Optional[Union[str, Path]] = None,
) -> IngestSettings:
    """Load settings from a YAML file (or defaults when no path is given)."""
    load_env_file(env_file)

    if path is None:
        return parse_settings({})

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}", field="config", value=config_path)

    try:
        with config_path.open(encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}", field="config") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config root must be a mapping: {config_path}", field="config")

    logger.debug("Loaded configuration from %s", config_path)
    return parse_settings(raw, config_path.parent)
