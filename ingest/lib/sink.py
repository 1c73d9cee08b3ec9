"""Warehouse sinks.

``Sink.upsert`` writes records idempotently on a composite natural key:
replaying the same batch leaves the table unchanged, and re-sending a key
with new values overwrites the stored row (latest values win).
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, execute_values

from ingest.lib.errors import ErrorKind, SinkError

logger = logging.getLogger(__name__)

__all__ = ["MemorySink", "PostgresSink", "Sink", "create_sink"]

Record = Mapping[str, Any]


def _dedupe(records: Sequence[Record], key_fields: Sequence[str], table: str) -> Dict[Tuple[Any, ...], Dict[str, Any]]:
    """Index records by natural key; a later record replaces an earlier one."""
    rows: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
    for record in records:
        missing = [k for k in key_fields if record.get(k) is None]
        if missing:
            raise SinkError(
                f"Record for {table} is missing key field(s): {', '.join(missing)}",
                table=table,
                kind=ErrorKind.VALIDATION_FAILURE,
            )
        rows[tuple(record[k] for k in key_fields)] = dict(record)
    return rows


class Sink(ABC):
    """Destination for ingested records."""

    @abstractmethod
    def upsert(self, table: str, records: Sequence[Record], key_fields: Sequence[str]) -> int:
        """Insert or update records; return the number of rows written."""

    def close(self) -> None:
        pass

    def __enter__(self) -> "Sink":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class MemorySink(Sink):
    """In-process tables, used for dry runs and tests."""

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[Tuple[Any, ...], Dict[str, Any]]] = {}
        self.writes = 0
        self._lock = threading.Lock()

    def upsert(self, table: str, records: Sequence[Record], key_fields: Sequence[str]) -> int:
        if not records:
            return 0
        rows = _dedupe(records, key_fields, table)
        with self._lock:
            stored = self.tables.setdefault(table, {})
            for key, row in rows.items():
                stored.setdefault(key, {}).update(row)
            self.writes += 1
        logger.debug("Upserted %d rows into %s (memory)", len(rows), table)
        return len(rows)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return list(self.tables.get(table, {}).values())


class PostgresSink(Sink):
    """Upserts via ``INSERT ... ON CONFLICT (keys) DO UPDATE``.

    Tables must already exist with a unique constraint on the key fields.
    Dict and list values are adapted to JSON.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        page_size: int = 1000,
        connect: Callable[..., Any] = psycopg2.connect,
    ) -> None:
        self.dsn = dsn
        self.page_size = page_size
        self._connect = connect
        self._conn: Any = None
        self._lock = threading.Lock()

    def connect(self) -> Any:
        """Open (or reuse) the connection; raises SinkError if unreachable."""
        if self._conn is None or getattr(self._conn, "closed", False):
            try:
                self._conn = self._connect(self.dsn)
            except psycopg2.Error as e:
                raise SinkError("Could not connect to warehouse", cause=e) from e
            logger.info("Connected to warehouse")
        return self._conn

    @staticmethod
    def build_statement(table: str, columns: Sequence[str], key_fields: Sequence[str]) -> sql.Composed:
        updates = [c for c in columns if c not in key_fields]
        if updates:
            conflict_action = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c))
                    for c in updates
                )
            )
        else:
            conflict_action = sql.SQL("DO NOTHING")

        return sql.SQL("INSERT INTO {} ({}) VALUES %s ON CONFLICT ({}) {}").format(
            sql.Identifier(*table.split(".")),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Identifier(k) for k in key_fields),
            conflict_action,
        )

    def upsert(self, table: str, records: Sequence[Record], key_fields: Sequence[str]) -> int:
        if not records:
            return 0
        rows = list(_dedupe(records, key_fields, table).values())

        columns: List[str] = list(key_fields)
        for row in rows:
            for name in row:
                if name not in columns:
                    columns.append(name)

        values = [
            tuple(Json(v) if isinstance(v, (dict, list)) else v for v in (row.get(c) for c in columns))
            for row in rows
        ]

        with self._lock:
            conn = self.connect()
            try:
                with conn.cursor() as cursor:
                    statement = self.build_statement(table, columns, key_fields)
                    execute_values(cursor, statement, values, page_size=self.page_size)
                conn.commit()
            except psycopg2.OperationalError as e:
                if conn.closed:
                    self._conn = None
                else:
                    conn.rollback()
                raise SinkError(f"Connection lost writing {table}", table=table, cause=e) from e
            except psycopg2.Error as e:
                conn.rollback()
                raise SinkError(
                    f"Upsert into {table} failed",
                    table=table,
                    cause=e,
                    kind=ErrorKind.VALIDATION_FAILURE,
                ) from e

        logger.debug("Upserted %d rows into %s", len(rows), table)
        return len(rows)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def create_sink(kind: str, dsn: Optional[str] = None) -> Sink:
    """Build a sink from its configured type name."""
    if kind == "memory":
        return MemorySink()
    if kind == "postgres":
        sink = PostgresSink(dsn)
        sink.connect()
        return sink
    raise ValueError(f"Unknown sink type: {kind}")
