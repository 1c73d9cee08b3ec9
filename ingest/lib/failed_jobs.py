"""Durable queue of operations that exhausted their retry budget.

A failed job is keyed by ``(job_type, payload)``; the payload part of the
key is its canonical JSON encoding, so dicts with the same content map to
the same job regardless of key order. Recording a failure for a key that
already exists updates the row in place instead of adding a duplicate.

Backends:
- MemoryFailedJobStore: process-local, for tests and dry runs
- FileFailedJobStore: JSON file in the state directory
- PostgresFailedJobStore: ``failed_jobs`` table with ON CONFLICT upsert
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import psycopg2
from psycopg2.extras import Json

from ingest.lib.constants import DEFAULT_FAILED_JOB_RETRY_DELAY_SECONDS
from ingest.lib.errors import SinkError

logger = logging.getLogger(__name__)

__all__ = [
    "FailedJob",
    "FailedJobStore",
    "FileFailedJobStore",
    "MemoryFailedJobStore",
    "PostgresFailedJobStore",
    "payload_key",
]

Now = Callable[[], datetime]
JobKey = Tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def payload_key(payload: Any) -> str:
    """Canonical JSON encoding used as the payload part of the job key."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class FailedJob:
    """A persisted operation awaiting a scheduled retry."""

    job_type: str
    payload: Any
    error_message: str
    error_kind: str
    error_count: int
    first_failed_at: datetime
    last_error_at: datetime
    next_retry_at: datetime

    @property
    def key(self) -> JobKey:
        return (self.job_type, payload_key(self.payload))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ("first_failed_at", "last_error_at", "next_retry_at"):
            data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailedJob":
        return cls(
            job_type=data["job_type"],
            payload=data["payload"],
            error_message=data.get("error_message", ""),
            error_kind=data.get("error_kind", "unknown"),
            error_count=int(data.get("error_count", 1)),
            first_failed_at=datetime.fromisoformat(data["first_failed_at"]),
            last_error_at=datetime.fromisoformat(data["last_error_at"]),
            next_retry_at=datetime.fromisoformat(data["next_retry_at"]),
        )


class FailedJobStore(ABC):
    """Persistence boundary for failed jobs."""

    def __init__(
        self,
        retry_delay_seconds: float = DEFAULT_FAILED_JOB_RETRY_DELAY_SECONDS,
        now: Now = _utcnow,
    ) -> None:
        self.retry_delay = timedelta(seconds=retry_delay_seconds)
        self.now = now

    @abstractmethod
    def record_failure(
        self,
        job_type: str,
        payload: Any,
        error_message: str,
        error_kind: str = "unknown",
    ) -> FailedJob:
        """Insert a new job or bump the existing one for the same key."""

    @abstractmethod
    def due(self, limit: Optional[int] = None) -> List[FailedJob]:
        """Jobs whose next_retry_at has passed, fewest errors first."""

    @abstractmethod
    def remove(self, job_type: str, payload: Any) -> bool:
        """Delete a job after its retry succeeded."""

    @abstractmethod
    def list_jobs(self) -> List[FailedJob]:
        """All stored jobs."""

    def get(self, job_type: str, payload: Any) -> Optional[FailedJob]:
        wanted = (job_type, payload_key(payload))
        for job in self.list_jobs():
            if job.key == wanted:
                return job
        return None

    def __len__(self) -> int:
        return len(self.list_jobs())


class MemoryFailedJobStore(FailedJobStore):
    """Failed jobs held in a dict keyed by ``(job_type, payload_key)``."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._jobs: Dict[JobKey, FailedJob] = {}
        self._lock = threading.Lock()

    def record_failure(
        self,
        job_type: str,
        payload: Any,
        error_message: str,
        error_kind: str = "unknown",
    ) -> FailedJob:
        now = self.now()
        key = (job_type, payload_key(payload))
        with self._lock:
            job = self._jobs.get(key)
            if job is None:
                job = FailedJob(
                    job_type=job_type,
                    payload=payload,
                    error_message=error_message,
                    error_kind=error_kind,
                    error_count=1,
                    first_failed_at=now,
                    last_error_at=now,
                    next_retry_at=now + self.retry_delay,
                )
                self._jobs[key] = job
            else:
                job.error_count += 1
                job.error_message = error_message
                job.error_kind = error_kind
                job.last_error_at = now
                job.next_retry_at = now + self.retry_delay
            self._persist()

        logger.info(
            "Stored failed job %s (attempt %d, next retry %s)",
            job_type,
            job.error_count,
            job.next_retry_at.isoformat(),
        )
        return job

    def due(self, limit: Optional[int] = None) -> List[FailedJob]:
        now = self.now()
        with self._lock:
            ready = [j for j in self._jobs.values() if j.next_retry_at <= now]
        ready.sort(key=lambda j: (j.error_count, j.next_retry_at))
        return ready[:limit] if limit is not None else ready

    def remove(self, job_type: str, payload: Any) -> bool:
        with self._lock:
            removed = self._jobs.pop((job_type, payload_key(payload)), None) is not None
            if removed:
                self._persist()
        return removed

    def list_jobs(self) -> List[FailedJob]:
        with self._lock:
            return list(self._jobs.values())

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""


class FileFailedJobStore(MemoryFailedJobStore):
    """Failed jobs stored as a JSON document in the state directory."""

    FILENAME = "failed_jobs.json"

    def __init__(self, state_dir: Union[str, Path], *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.path = Path(state_dir) / self.FILENAME
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("No failed job file at %s", self.path)
            return
        try:
            rows = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise SinkError(f"Failed job file is corrupt: {self.path}", cause=e) from e

        for row in rows:
            job = FailedJob.from_dict(row)
            self._jobs[job.key] = job
        logger.info("Loaded %d failed jobs from %s", len(self._jobs), self.path)

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        rows = [job.to_dict() for job in self._jobs.values()]
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(rows, indent=2, default=str))
        tmp.replace(self.path)


_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS failed_jobs (
    job_type TEXT NOT NULL,
    payload_key TEXT NOT NULL,
    payload JSONB NOT NULL,
    error_message TEXT,
    error_kind TEXT,
    error_count INTEGER NOT NULL DEFAULT 1,
    first_failed_at TIMESTAMPTZ NOT NULL,
    last_error_at TIMESTAMPTZ NOT NULL,
    next_retry_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (job_type, payload_key)
)
"""

_UPSERT = """
INSERT INTO failed_jobs (
    job_type, payload_key, payload, error_message, error_kind,
    error_count, first_failed_at, last_error_at, next_retry_at
)
VALUES (%s, %s, %s, %s, %s, 1, %s, %s, %s)
ON CONFLICT (job_type, payload_key) DO UPDATE SET
    error_count = failed_jobs.error_count + 1,
    error_message = EXCLUDED.error_message,
    error_kind = EXCLUDED.error_kind,
    last_error_at = EXCLUDED.last_error_at,
    next_retry_at = EXCLUDED.next_retry_at
RETURNING job_type, payload, error_message, error_kind, error_count,
    first_failed_at, last_error_at, next_retry_at
"""

_SELECT_COLUMNS = (
    "job_type, payload, error_message, error_kind, error_count, "
    "first_failed_at, last_error_at, next_retry_at"
)


class PostgresFailedJobStore(FailedJobStore):
    """Failed jobs in a Postgres ``failed_jobs`` table."""

    def __init__(
        self,
        dsn: Optional[str] = None,
        *args: Any,
        connect: Callable[..., Any] = psycopg2.connect,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.dsn = dsn
        self._connect = connect
        self._conn: Any = None
        self._lock = threading.Lock()

    def _connection(self) -> Any:
        if self._conn is None or getattr(self._conn, "closed", False):
            try:
                self._conn = self._connect(self.dsn)
            except psycopg2.Error as e:
                raise SinkError("Could not connect to failed job store", cause=e) from e
            with self._conn.cursor() as cursor:
                cursor.execute(_CREATE_TABLE)
            self._conn.commit()
        return self._conn

    def _execute(self, sql: str, params: Tuple[Any, ...] = ()) -> List[Tuple[Any, ...]]:
        with self._lock:
            conn = self._connection()
            try:
                with conn.cursor() as cursor:
                    cursor.execute(sql, params)
                    rows = cursor.fetchall() if cursor.description else []
                conn.commit()
            except psycopg2.Error as e:
                if not conn.closed:
                    conn.rollback()
                raise SinkError("Failed job store query failed", table="failed_jobs", cause=e) from e
        return rows

    @staticmethod
    def _row_to_job(row: Tuple[Any, ...]) -> FailedJob:
        return FailedJob(*row)

    def record_failure(
        self,
        job_type: str,
        payload: Any,
        error_message: str,
        error_kind: str = "unknown",
    ) -> FailedJob:
        now = self.now()
        rows = self._execute(
            _UPSERT,
            (
                job_type,
                payload_key(payload),
                Json(payload),
                error_message,
                error_kind,
                now,
                now,
                now + self.retry_delay,
            ),
        )
        job = self._row_to_job(rows[0])
        logger.info("Stored failed job %s (attempt %d)", job_type, job.error_count)
        return job

    def due(self, limit: Optional[int] = None) -> List[FailedJob]:
        sql = (
            f"SELECT {_SELECT_COLUMNS} FROM failed_jobs WHERE next_retry_at <= %s "
            "ORDER BY error_count ASC, next_retry_at ASC"
        )
        params: Tuple[Any, ...] = (self.now(),)
        if limit is not None:
            sql += " LIMIT %s"
            params += (limit,)
        return [self._row_to_job(r) for r in self._execute(sql, params)]

    def remove(self, job_type: str, payload: Any) -> bool:
        rows = self._execute(
            "DELETE FROM failed_jobs WHERE job_type = %s AND payload_key = %s RETURNING job_type",
            (job_type, payload_key(payload)),
        )
        return bool(rows)

    def list_jobs(self) -> List[FailedJob]:
        rows = self._execute(f"SELECT {_SELECT_COLUMNS} FROM failed_jobs ORDER BY job_type")
        return [self._row_to_job(r) for r in rows]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
