"""Default values shared across the ingestion core.

This module centralizes the request budget, retry, circuit breaker and
batching defaults so every component reads the same numbers.
"""

# =============================================================================
# Request Governor Defaults
# =============================================================================

# Provider hard cap is 3000/minute; keep a buffer of 200
DEFAULT_REQUESTS_PER_MINUTE: int = 2800

# Provider allows ~50/second; keep a buffer of 5
DEFAULT_REQUESTS_PER_SECOND: int = 45

# Informational daily ceiling (0 disables the warning)
DEFAULT_DAILY_LIMIT: int = 0

# Suspension applied to every caller after a 429 (in seconds)
DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS: float = 60.0

# HTTP timeout per request (in seconds)
DEFAULT_REQUEST_TIMEOUT_SECONDS: float = 30.0

# Call log entries older than this are dropped by cleanup (in seconds)
DEFAULT_CALL_LOG_RETENTION_SECONDS: float = 300.0

DEFAULT_BASE_URL: str = "https://financialmodelingprep.com/api/v3"


# =============================================================================
# Circuit Breaker Defaults
# =============================================================================

# Consecutive failures before the circuit opens
DEFAULT_FAILURE_THRESHOLD: int = 5

# Time an open circuit rejects calls before a half-open trial (in seconds)
DEFAULT_BREAKER_TIMEOUT_SECONDS: float = 60.0


# =============================================================================
# Failed Job Queue Defaults
# =============================================================================

# Delay before a persisted failure becomes due again (in seconds)
DEFAULT_FAILED_JOB_RETRY_DELAY_SECONDS: float = 3600.0

# Jobs re-dispatched per process_failed_jobs() call
DEFAULT_FAILED_JOB_BATCH_LIMIT: int = 10


# =============================================================================
# Orchestrator Defaults
# =============================================================================

DEFAULT_BATCH_SIZE: int = 10

# Pause between batches (in seconds)
DEFAULT_BATCH_PAUSE_SECONDS: float = 0.5

# Number of recent errors retained for display
DEFAULT_RECENT_ERRORS: int = 5

DEFAULT_INCREMENTAL_LOOKBACK_DAYS: int = 7
DEFAULT_FULL_LOOKBACK_DAYS: int = 730

# Interval between periodic progress / usage reports (in seconds)
DEFAULT_PROGRESS_INTERVAL_SECONDS: float = 30.0

# Run summaries retained in the JSON run log
DEFAULT_RUN_LOG_KEEP: int = 100

DEFAULT_STATE_DIR: str = ".state"


__all__ = [
    "DEFAULT_REQUESTS_PER_MINUTE",
    "DEFAULT_REQUESTS_PER_SECOND",
    "DEFAULT_DAILY_LIMIT",
    "DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS",
    "DEFAULT_REQUEST_TIMEOUT_SECONDS",
    "DEFAULT_CALL_LOG_RETENTION_SECONDS",
    "DEFAULT_BASE_URL",
    "DEFAULT_FAILURE_THRESHOLD",
    "DEFAULT_BREAKER_TIMEOUT_SECONDS",
    "DEFAULT_FAILED_JOB_RETRY_DELAY_SECONDS",
    "DEFAULT_FAILED_JOB_BATCH_LIMIT",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_BATCH_PAUSE_SECONDS",
    "DEFAULT_RECENT_ERRORS",
    "DEFAULT_INCREMENTAL_LOOKBACK_DAYS",
    "DEFAULT_FULL_LOOKBACK_DAYS",
    "DEFAULT_PROGRESS_INTERVAL_SECONDS",
    "DEFAULT_RUN_LOG_KEEP",
    "DEFAULT_STATE_DIR",
]
