"""Request governor for the metered upstream API.

The governor is the only component that talks to the network. It admits a
call only when the rolling per-minute and per-second windows have room,
suspends callers (without consuming budget) until the oldest call in the
window ages out, and enters a shared cooldown when the provider signals a
rate limit.

Example:
    async with RequestGovernor(api_key="${FMP_API_KEY}") as governor:
        quote = await governor.make_request("/quote/AAPL")
        print(governor.snapshot())
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Union

import httpx

from ingest import __version__
from ingest.lib.constants import (
    DEFAULT_BASE_URL,
    DEFAULT_CALL_LOG_RETENTION_SECONDS,
    DEFAULT_DAILY_LIMIT,
    DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_REQUESTS_PER_MINUTE,
    DEFAULT_REQUESTS_PER_SECOND,
)
from ingest.lib.env import expand_env_vars
from ingest.lib.errors import (
    ApiConnectionError,
    ApiTimeoutError,
    AuthFailureError,
    RateLimitedError,
    ValidationFailureError,
    api_error_for_status,
)

logger = logging.getLogger(__name__)

__all__ = [
    "CallRecord",
    "DailyUsageStore",
    "RequestBudget",
    "RequestGovernor",
]

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

MINUTE = 60.0
SECOND = 1.0

_USER_AGENT = f"ingest-foundry/{__version__} httpx/{getattr(httpx, '__version__', 'unknown')}"


@dataclass
class CallRecord:
    """One dispatched request, kept for usage statistics."""

    timestamp: float
    endpoint: str
    success: bool
    response_ms: float


@dataclass
class RequestBudget:
    """Rolling admission windows plus the informational daily counter."""

    minute_window: Deque[float] = field(default_factory=deque)
    second_window: Deque[float] = field(default_factory=deque)
    calls_today: int = 0
    day: Optional[str] = None
    cooldown_until: float = 0.0

    def prune(self, now: float) -> None:
        """Drop dispatches that left the trailing windows."""
        while self.minute_window and self.minute_window[0] <= now - MINUTE:
            self.minute_window.popleft()
        while self.second_window and self.second_window[0] <= now - SECOND:
            self.second_window.popleft()

    def record_dispatch(self, now: float) -> None:
        self.minute_window.append(now)
        self.second_window.append(now)


class DailyUsageStore:
    """JSON file holding today's call count so a restart does not reset it.

    Stored in the state directory next to the failed-job queue.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def load(self) -> Tuple[Optional[str], int]:
        if not self.path.exists():
            return None, 0
        try:
            data = json.loads(self.path.read_text())
            return data.get("day"), int(data.get("calls", 0))
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            logger.warning("Invalid daily usage file %s: %s", self.path, e)
            return None, 0

    def save(self, day: str, calls: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "day": day,
            "calls": calls,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        self.path.write_text(json.dumps(data, indent=2))


def _utc_day() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class RequestGovernor:
    """Shared request budget and HTTP transport for all ingestion tasks.

    Configuration:
    - requests_per_minute: rolling 60s ceiling (kept below the provider cap)
    - requests_per_second: rolling 1s ceiling (0 disables)
    - daily_limit: informational; crossing it only logs a warning
    - cooldown_seconds: suspension applied to every caller after a 429
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE,
        requests_per_second: int = DEFAULT_REQUESTS_PER_SECOND,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        cooldown_seconds: float = DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        usage_store: Optional[DailyUsageStore] = None,
        usage_flush_every: int = 25,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        today: Callable[[], str] = _utc_day,
    ) -> None:
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be > 0")
        if requests_per_second < 0:
            raise ValueError("requests_per_second must be >= 0")

        self.api_key = expand_env_vars(api_key) if api_key else None
        self.base_url = base_url.rstrip("/")
        self.requests_per_minute = requests_per_minute
        self.requests_per_second = requests_per_second
        self.daily_limit = daily_limit
        self.cooldown_seconds = cooldown_seconds
        self.timeout = timeout

        self.clock = clock
        self._sleep = sleep
        self._today = today
        self._lock = asyncio.Lock()
        self._budget = RequestBudget()
        self._call_log: List[CallRecord] = []
        self.success_count = 0
        self.failure_count = 0
        self.total_dispatched = 0

        self._usage_store = usage_store
        self._usage_flush_every = max(1, usage_flush_every)
        if usage_store is not None:
            day, calls = usage_store.load()
            if day == self._today():
                self._budget.day = day
                self._budget.calls_today = calls
                logger.info("Resuming daily API usage for %s at %d calls", day, calls)

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": _USER_AGENT},
        )

    async def __aenter__(self) -> "RequestGovernor":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Flush the daily counter and close the HTTP client if owned."""
        self._flush_usage()
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Admission control
    # ------------------------------------------------------------------

    async def acquire(self) -> None:
        """Wait until the budget admits one more call, then count it."""
        while True:
            async with self._lock:
                now = self.clock()
                wait = self._admission_delay(now)
                if wait <= 0:
                    self._budget.record_dispatch(now)
                    self._count_dispatch()
                    return

            logger.debug("Request budget full; suspending %.2fs", wait)
            await self._sleep(wait)

    def _admission_delay(self, now: float) -> float:
        budget = self._budget
        budget.prune(now)

        if budget.cooldown_until > now:
            return budget.cooldown_until - now

        if len(budget.minute_window) >= self.requests_per_minute:
            return budget.minute_window[0] + MINUTE - now

        if self.requests_per_second and len(budget.second_window) >= self.requests_per_second:
            return budget.second_window[0] + SECOND - now

        return 0.0

    def _count_dispatch(self) -> None:
        budget = self._budget
        day = self._today()
        if budget.day != day:
            if budget.day is not None:
                logger.info("Daily API counter reset (%s: %d calls)", budget.day, budget.calls_today)
            budget.day = day
            budget.calls_today = 0

        budget.calls_today += 1
        self.total_dispatched += 1

        if self.daily_limit and budget.calls_today == self.daily_limit:
            logger.warning(
                "Daily API usage reached the configured limit of %d calls", self.daily_limit
            )

        if budget.calls_today % self._usage_flush_every == 0:
            self._flush_usage()

    def _flush_usage(self) -> None:
        if self._usage_store is not None and self._budget.day is not None:
            self._usage_store.save(self._budget.day, self._budget.calls_today)

    def enter_cooldown(self, seconds: Optional[float] = None) -> None:
        """Suspend admission for every caller."""
        duration = self.cooldown_seconds if seconds is None else seconds
        until = self.clock() + duration
        if until > self._budget.cooldown_until:
            self._budget.cooldown_until = until
            logger.warning("Rate limited by API; all requests paused for %.0fs", duration)

    @property
    def in_cooldown(self) -> bool:
        return self._budget.cooldown_until > self.clock()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Dispatch one GET once the budget admits it and return decoded JSON.

        Args:
            endpoint: Path relative to the base URL (e.g. "/quote/AAPL")
            params: Query parameters; None values are dropped and the API
                key is added

        Returns:
            The decoded JSON body

        Raises:
            ApiError: A typed subclass whose ``kind`` tells the resilience
                layer how to treat the failure. A 429 also starts the
                shared cooldown.
        """
        await self.acquire()

        query = {k: v for k, v in (params or {}).items() if v is not None}
        if self.api_key:
            query["apikey"] = self.api_key

        started = self.clock()
        try:
            response = await self._client.get(endpoint, params=query)
        except httpx.TimeoutException as exc:
            self._record(endpoint, False, started)
            raise ApiTimeoutError(
                f"API request timed out: {endpoint}", endpoint=endpoint, cause=exc
            ) from exc
        except httpx.TransportError as exc:
            self._record(endpoint, False, started)
            raise ApiConnectionError(
                f"Connection failed: {endpoint}: {exc}", endpoint=endpoint, cause=exc
            ) from exc

        if response.status_code == 429:
            self._record(endpoint, False, started)
            retry_after = _parse_retry_after(response)
            self.enter_cooldown(max(self.cooldown_seconds, retry_after or 0.0))
            raise RateLimitedError(
                f"429 Too Many Requests: {endpoint}",
                status_code=429,
                endpoint=endpoint,
                retry_after=retry_after,
            )

        if response.status_code >= 400:
            self._record(endpoint, False, started)
            raise api_error_for_status(
                response.status_code,
                f"HTTP {response.status_code} from {endpoint}",
                endpoint=endpoint,
            )

        try:
            data = response.json()
        except ValueError as exc:
            self._record(endpoint, False, started)
            raise ValidationFailureError(
                f"Response from {endpoint} is not valid JSON",
                status_code=response.status_code,
                endpoint=endpoint,
                cause=exc,
            ) from exc

        if isinstance(data, dict) and "Error Message" in data:
            self._record(endpoint, False, started)
            raise self._payload_error(str(data["Error Message"]), endpoint, response.status_code)

        self._record(endpoint, True, started)
        return data

    def _payload_error(self, message: str, endpoint: str, status_code: int) -> Exception:
        """Map an error payload returned with a 2xx status."""
        lowered = message.lower()
        if "limit reach" in lowered or "rate limit" in lowered:
            self.enter_cooldown()
            return RateLimitedError(message, status_code=status_code, endpoint=endpoint)
        if "api key" in lowered or "apikey" in lowered:
            return AuthFailureError(message, status_code=status_code, endpoint=endpoint)
        return ValidationFailureError(message, status_code=status_code, endpoint=endpoint)

    def _record(self, endpoint: str, success: bool, started: float) -> None:
        now = self.clock()
        self._call_log.append(
            CallRecord(
                timestamp=now,
                endpoint=endpoint,
                success=success,
                response_ms=(now - started) * 1000,
            )
        )
        if success:
            self.success_count += 1
        else:
            self.failure_count += 1

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Return current API usage for monitoring."""
        now = self.clock()
        self._budget.prune(now)
        in_window = len(self._budget.minute_window)
        recent = [c for c in self._call_log if c.timestamp > now - MINUTE]
        avg_ms = sum(c.response_ms for c in recent) / len(recent) if recent else 0.0

        return {
            "calls_in_last_minute": in_window,
            "remaining_this_minute": max(0, self.requests_per_minute - in_window),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "calls_today": self._budget.calls_today,
            "avg_response_ms": round(avg_ms),
            "in_cooldown": self._budget.cooldown_until > now,
        }

    def cleanup_logs(self, retention: float = DEFAULT_CALL_LOG_RETENTION_SECONDS) -> int:
        """Drop call log entries older than ``retention`` seconds."""
        cutoff = self.clock() - retention
        before = len(self._call_log)
        self._call_log = [c for c in self._call_log if c.timestamp > cutoff]
        return before - len(self._call_log)


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    retry_after = response.headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except (TypeError, ValueError):
        return None
