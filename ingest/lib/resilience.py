"""Failure classification, retry and failed-job handling.

``ResilienceLayer.with_retry`` wraps one operation:

1. The operation's circuit breaker is consulted before every attempt; an
   open breaker fails fast without invoking the operation.
2. Failures are classified into an ``ErrorKind`` and retried with the
   exponential backoff policy registered for that kind (tenacity drives
   the loop).
3. When attempts run out the operation is stored in the failed-job queue
   and ``None`` is returned; the caller is never interrupted.

The decision functions (classify, severity, should_retry, next_delay) are
pure so they can be tested without any I/O.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx
import psycopg2
import tenacity

from ingest.lib.circuit_breaker import CircuitBreakerRegistry, get_breaker_registry
from ingest.lib.constants import DEFAULT_FAILED_JOB_BATCH_LIMIT
from ingest.lib.env import resolve_state_dir
from ingest.lib.errors import (
    CircuitOpenError,
    ErrorKind,
    IngestError,
    NotFoundError,
    api_error_for_status,
)
from ingest.lib.failed_jobs import FailedJobStore, FileFailedJobStore

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_POLICIES",
    "FailedJobReport",
    "OperationOutcome",
    "ResilienceLayer",
    "RetryPolicy",
    "Severity",
    "classify",
    "get_resilience_layer",
    "log_level_for",
    "next_delay",
    "policy_for",
    "severity",
    "should_retry",
]

Operation = Callable[[], Awaitable[Any]]
JobHandler = Callable[[Any], Awaitable[Any]]


class Severity(str, Enum):
    """How loudly a failure is reported."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and exponential backoff for one error kind."""

    max_attempts: int
    initial_delay: float = 0.0
    max_delay: float = 0.0
    backoff_multiplier: float = 1.0

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1)


DEFAULT_POLICIES: Dict[ErrorKind, RetryPolicy] = {
    ErrorKind.RATE_LIMITED: RetryPolicy(5, 60.0, 300.0, 2.0),
    ErrorKind.SERVER_ERROR: RetryPolicy(3, 5.0, 30.0, 2.0),
    ErrorKind.TIMEOUT: RetryPolicy(3, 3.0, 15.0, 2.0),
    ErrorKind.CONNECTION: RetryPolicy(3, 2.0, 10.0, 1.5),
    ErrorKind.UNKNOWN: RetryPolicy(3, 1.0, 10.0, 2.0),
    ErrorKind.VALIDATION_FAILURE: RetryPolicy.no_retry(),
    ErrorKind.AUTH_FAILURE: RetryPolicy.no_retry(),
    ErrorKind.NOT_FOUND: RetryPolicy.no_retry(),
}

_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}

# Fallback for errors raised outside the typed transport boundary
_MESSAGE_HINTS = (
    (ErrorKind.RATE_LIMITED, ("rate limit", "limit reach", "too many requests", "429")),
    (ErrorKind.AUTH_FAILURE, ("unauthorized", "invalid api key", "forbidden", "401", "403")),
    (ErrorKind.NOT_FOUND, ("not found", "404")),
    (ErrorKind.TIMEOUT, ("timeout", "timed out", "etimedout")),
    (ErrorKind.CONNECTION, ("connection", "econnrefused", "econnreset", "enotfound")),
    (ErrorKind.SERVER_ERROR, ("internal server error", "bad gateway", "500", "502", "503")),
    (ErrorKind.VALIDATION_FAILURE, ("validation", "invalid")),
)


def classify(error: BaseException) -> ErrorKind:
    """Map an exception to an ErrorKind.

    Typed errors carry their kind from the transport boundary. Library
    exceptions (httpx, psycopg2) map by type; anything else falls back to
    message hints.

    Args:
        error: The exception raised by an attempt

    Returns:
        The ErrorKind used to pick a retry policy and severity
    """
    if isinstance(error, IngestError):
        return error.kind
    if isinstance(error, httpx.TimeoutException):
        return ErrorKind.TIMEOUT
    if isinstance(error, httpx.TransportError):
        return ErrorKind.CONNECTION
    if isinstance(error, httpx.HTTPStatusError):
        return api_error_for_status(error.response.status_code, str(error)).kind
    if isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return ErrorKind.CONNECTION
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorKind.CONNECTION

    message = str(error).lower()
    for kind, hints in _MESSAGE_HINTS:
        if any(hint in message for hint in hints):
            return kind
    return ErrorKind.UNKNOWN


def severity(kind: ErrorKind, attempt_number: int) -> Severity:
    """Severity of a failure on the given (1-based) attempt."""
    if kind == ErrorKind.AUTH_FAILURE:
        return Severity.CRITICAL
    if kind == ErrorKind.VALIDATION_FAILURE:
        return Severity.HIGH
    if kind in (ErrorKind.RATE_LIMITED, ErrorKind.NOT_FOUND):
        return Severity.LOW
    return Severity.HIGH if attempt_number > 3 else Severity.MEDIUM


def log_level_for(level: Severity) -> int:
    return _LOG_LEVELS[level]


def policy_for(kind: ErrorKind, policies: Mapping[ErrorKind, RetryPolicy]) -> RetryPolicy:
    return policies.get(kind) or policies.get(ErrorKind.UNKNOWN) or RetryPolicy.no_retry()


def should_retry(
    kind: ErrorKind,
    attempt_number: int,
    policies: Mapping[ErrorKind, RetryPolicy] = DEFAULT_POLICIES,
) -> bool:
    """True if another attempt is allowed after ``attempt_number`` failed."""
    return attempt_number < policy_for(kind, policies).max_attempts


def next_delay(policy: RetryPolicy, attempt_number: int) -> float:
    """Backoff before the attempt following ``attempt_number``."""
    delay = policy.initial_delay * policy.backoff_multiplier ** (attempt_number - 1)
    return min(delay, policy.max_delay)


@dataclass
class OperationOutcome:
    """Result of running one operation through the resilience layer."""

    operation: str
    succeeded: bool
    value: Any = None
    attempts: int = 0
    error: Optional[BaseException] = None
    kind: Optional[ErrorKind] = None

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        if isinstance(self.error, IngestError):
            return self.error.message
        return str(self.error)


@dataclass
class FailedJobReport:
    """Counts from one process_failed_jobs() pass."""

    due: int = 0
    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    skipped_types: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "due": self.due,
            "retried": self.retried,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class ResilienceLayer:
    """Retry, circuit breaking and failed-job persistence for operations."""

    def __init__(
        self,
        store: FailedJobStore,
        *,
        policies: Optional[Mapping[ErrorKind, RetryPolicy]] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.policies: Dict[ErrorKind, RetryPolicy] = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self.breakers = breakers if breakers is not None else get_breaker_registry()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # tenacity hooks
    # ------------------------------------------------------------------

    def _retryable(self, error: BaseException) -> bool:
        if isinstance(error, CircuitOpenError):
            return False
        return policy_for(classify(error), self.policies).max_attempts > 1

    def _stop(self, retry_state: tenacity.RetryCallState) -> bool:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if error is None:
            return True
        return not should_retry(classify(error), retry_state.attempt_number, self.policies)

    def _wait(self, retry_state: tenacity.RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        kind = classify(error) if error is not None else ErrorKind.UNKNOWN
        return next_delay(policy_for(kind, self.policies), retry_state.attempt_number)

    def _before_sleep(self, operation_name: str) -> Callable[[tenacity.RetryCallState], None]:
        def log_retry(retry_state: tenacity.RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            kind = classify(error) if error is not None else ErrorKind.UNKNOWN
            level = severity(kind, retry_state.attempt_number)
            logger.log(
                log_level_for(level),
                "%s attempt %d/%d failed (%s): %s. Retrying in %.1fs...",
                operation_name,
                retry_state.attempt_number,
                policy_for(kind, self.policies).max_attempts,
                kind.value,
                error,
                retry_state.next_action.sleep if retry_state.next_action else 0,
            )

        return log_retry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation_name: str,
        fn: Operation,
        payload: Any = None,
        *,
        on_not_found: Callable[[], Any] = list,
    ) -> OperationOutcome:
        """Run ``fn`` with retries and report how it ended.

        Args:
            operation_name: Breaker and failed-job key (e.g. the data kind name)
            fn: Zero-argument coroutine function performing one attempt
            payload: JSON-serializable arguments stored with a failed job
            on_not_found: Factory for the value returned when upstream says 404

        Returns:
            OperationOutcome with the value, attempt count and, on failure,
            the error and its kind. Failures never raise; they are queued.
        """
        breaker = self.breakers.get(operation_name)
        attempts = 0

        async def attempt() -> Any:
            nonlocal attempts
            if not breaker.allow():
                raise CircuitOpenError(operation_name, retry_in=breaker.retry_in())
            attempts += 1
            try:
                result = await fn()
            except NotFoundError:
                # Upstream answered; the resource simply does not exist
                breaker.record_success()
                raise
            except asyncio.CancelledError:
                breaker.release_trial()
                raise
            except Exception:
                breaker.record_failure()
                raise
            breaker.record_success()
            return result

        retrying = tenacity.AsyncRetrying(
            stop=self._stop,
            wait=self._wait,
            retry=tenacity.retry_if_exception(self._retryable),
            before_sleep=self._before_sleep(operation_name),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            value = await retrying(attempt)
        except NotFoundError:
            logger.debug("%s: no data upstream for %s", operation_name, payload)
            return OperationOutcome(
                operation_name, True, on_not_found(), attempts, kind=ErrorKind.NOT_FOUND
            )
        except Exception as error:
            kind = classify(error)
            await self._persist(operation_name, payload, error, kind, attempts)
            return OperationOutcome(operation_name, False, None, attempts, error, kind)

        return OperationOutcome(operation_name, True, value, attempts)

    async def with_retry(
        self,
        operation_name: str,
        fn: Operation,
        payload: Any = None,
        *,
        on_not_found: Callable[[], Any] = list,
    ) -> Any:
        """Run ``fn`` with retries; return its result, or None once it is queued.

        Args:
            operation_name: Breaker and failed-job key
            fn: Zero-argument coroutine function performing one attempt
            payload: JSON-serializable arguments stored with a failed job

        Example:
            quote = await layer.with_retry(
                "fetchQuote",
                lambda: governor.make_request("/quote/AAPL"),
                {"entity": "AAPL"},
            )
        """
        outcome = await self.execute(operation_name, fn, payload, on_not_found=on_not_found)
        return outcome.value

    async def _persist(
        self,
        operation_name: str,
        payload: Any,
        error: BaseException,
        kind: ErrorKind,
        attempts: int,
    ) -> None:
        if isinstance(error, CircuitOpenError):
            logger.warning("%s skipped: %s", operation_name, error.message)
        else:
            level = severity(kind, max(attempts, 1))
            extra = {"failure": error.to_dict()} if isinstance(error, IngestError) else {}
            logger.log(
                log_level_for(level),
                "%s failed after %d attempt(s) (%s, severity=%s): %s",
                operation_name,
                attempts,
                kind.value,
                level.value,
                error,
                extra=extra,
            )

        message = error.message if isinstance(error, IngestError) else str(error)
        try:
            await asyncio.to_thread(
                self.store.record_failure, operation_name, payload, message, kind.value
            )
        except (IngestError, OSError) as store_error:
            # The run carries on; only the deferred retry is lost
            logger.error(
                "Could not queue failed job %s %s: %s",
                operation_name,
                payload,
                store_error,
                exc_info=True,
            )

    async def process_failed_jobs(
        self,
        handlers: Mapping[str, JobHandler],
        limit: int = DEFAULT_FAILED_JOB_BATCH_LIMIT,
    ) -> FailedJobReport:
        """Re-dispatch due failed jobs through ``execute``.

        Jobs that succeed are removed; jobs that fail again are bumped in
        place.

        Args:
            handlers: Maps a job type (the operation name it failed under) to
                a coroutine function taking the stored payload
            limit: Maximum number of due jobs to retry in this pass

        Returns:
            FailedJobReport with due, retried, succeeded, failed and skipped counts
        """
        jobs = await asyncio.to_thread(self.store.due, limit)
        report = FailedJobReport(due=len(jobs))
        if not jobs:
            logger.info("No failed jobs due for retry")
            return report

        logger.info("Retrying %d failed job(s)", len(jobs))
        for job in jobs:
            handler = handlers.get(job.job_type)
            if handler is None:
                report.skipped += 1
                report.skipped_types.append(job.job_type)
                logger.warning("No handler registered for failed job type %s", job.job_type)
                continue

            report.retried += 1
            outcome = await self.execute(
                job.job_type, lambda payload=job.payload: handler(payload), job.payload
            )
            if outcome.succeeded:
                await asyncio.to_thread(self.store.remove, job.job_type, job.payload)
                report.succeeded += 1
            else:
                report.failed += 1

        logger.info(
            "Failed job retry: %d succeeded, %d failed, %d skipped",
            report.succeeded,
            report.failed,
            report.skipped,
        )
        return report


_layer: Optional[ResilienceLayer] = None


def get_resilience_layer() -> ResilienceLayer:
    """Return the process-wide layer backed by the file store."""
    global _layer
    if _layer is None:
        _layer = ResilienceLayer(FileFailedJobStore(resolve_state_dir()))
    return _layer
