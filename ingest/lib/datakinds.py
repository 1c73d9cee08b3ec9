"""Declarative data kinds.

A data kind describes one category of upstream data: which endpoint to
call for an entity, where the records sit in the response, and which
table and natural key they are upserted under. Field mappings and table
schemas stay out of the code; kinds can be declared in YAML.

Example:
    kind = DataKind(
        name="stock_prices",
        endpoint="/historical-price-full/{entity}",
        table="stock_prices",
        data_path="historical",
        date_window=True,
    )
    written = await kind.load("AAPL", governor, sink, window)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from ingest.lib.errors import ConfigurationError, ValidationFailureError

if TYPE_CHECKING:
    from ingest.lib.governor import RequestGovernor
    from ingest.lib.sink import Sink

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_DATA_KINDS",
    "DataKind",
    "LookbackWindow",
    "extract_records",
    "parse_data_kinds",
]


@dataclass(frozen=True)
class LookbackWindow:
    """Inclusive date range sent as ``from``/``to`` parameters."""

    start: date
    end: date

    @classmethod
    def last_days(cls, days: int, today: Optional[date] = None) -> "LookbackWindow":
        end = today or datetime.now(timezone.utc).date()
        return cls(start=end - timedelta(days=days), end=end)

    def params(self) -> Dict[str, str]:
        return {"from": self.start.isoformat(), "to": self.end.isoformat()}


def extract_records(data: Any, data_path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Pull the list of records out of a decoded response.

    ``data_path`` is a dotted path to the records list (e.g. ``historical``).
    A single object response is treated as one record.
    """
    if data_path:
        for key in data_path.split("."):
            if isinstance(data, dict):
                data = data.get(key, [])
            else:
                logger.warning("Cannot navigate path '%s' in response", data_path)
                return []

    if data is None:
        return []
    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    if isinstance(data, dict):
        return [data] if data else []
    raise ValidationFailureError(f"Unexpected response shape: {type(data).__name__}")


@dataclass(frozen=True)
class DataKind:
    """One category of data loaded per entity."""

    name: str
    endpoint: str
    table: str
    entity_field: str = "symbol"
    timestamp_field: str = "date"
    period: Optional[str] = None
    data_path: Optional[str] = None
    date_window: bool = False
    params: Mapping[str, Any] = field(default_factory=dict)

    @property
    def key_fields(self) -> Tuple[str, ...]:
        keys = [self.entity_field, self.timestamp_field]
        if self.period:
            keys.append("period")
        return tuple(keys)

    def request_params(self, window: Optional[LookbackWindow] = None) -> Dict[str, Any]:
        query: Dict[str, Any] = dict(self.params)
        if self.period:
            query["period"] = self.period
        if self.date_window and window is not None:
            query.update(window.params())
        return query

    def prepare(self, entity: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Stamp entity and period on each record and drop undated rows."""
        prepared = []
        for record in records:
            if record.get(self.timestamp_field) is None:
                continue
            row = dict(record)
            row[self.entity_field] = entity
            if self.period:
                row.setdefault("period", self.period)
            prepared.append(row)
        return prepared

    async def load(
        self,
        entity: str,
        governor: "RequestGovernor",
        sink: "Sink",
        window: Optional[LookbackWindow] = None,
    ) -> int:
        """Fetch this kind for one entity and upsert it; return rows written."""
        endpoint = self.endpoint.format(entity=entity)
        data = await governor.make_request(endpoint, self.request_params(window))
        records = self.prepare(entity, extract_records(data, self.data_path))
        if not records:
            logger.debug("%s: no records for %s", self.name, entity)
            return 0
        return await asyncio.to_thread(sink.upsert, self.table, records, self.key_fields)


DEFAULT_DATA_KINDS: Tuple[DataKind, ...] = (
    DataKind(
        name="stock_prices",
        endpoint="/historical-price-full/{entity}",
        table="stock_prices",
        data_path="historical",
        date_window=True,
    ),
    DataKind(
        name="income_statements",
        endpoint="/income-statement/{entity}",
        table="income_statements",
        period="quarter",
        params={"limit": 4},
    ),
    DataKind(
        name="balance_sheets",
        endpoint="/balance-sheet-statement/{entity}",
        table="balance_sheets",
        period="quarter",
        params={"limit": 4},
    ),
    DataKind(
        name="cash_flow_statements",
        endpoint="/cash-flow-statement/{entity}",
        table="cash_flow_statements",
        period="quarter",
        params={"limit": 4},
    ),
    DataKind(
        name="key_metrics",
        endpoint="/key-metrics/{entity}",
        table="key_metrics",
        period="quarter",
        params={"limit": 4},
    ),
)

_DATA_KIND_FIELDS = {
    "name",
    "endpoint",
    "table",
    "entity_field",
    "timestamp_field",
    "period",
    "data_path",
    "date_window",
    "params",
}


def parse_data_kinds(raw: Any) -> List[DataKind]:
    """Build DataKinds from a YAML list of mappings."""
    if not isinstance(raw, list):
        raise ConfigurationError("data_kinds must be a list", field="data_kinds", value=raw)

    kinds: List[DataKind] = []
    issues: List[str] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            issues.append(f"data_kinds[{index}] must be a mapping")
            continue
        unknown = set(entry) - _DATA_KIND_FIELDS
        if unknown:
            issues.append(f"data_kinds[{index}] has unknown field(s): {', '.join(sorted(unknown))}")
        missing = [k for k in ("name", "endpoint", "table") if not entry.get(k)]
        if missing:
            issues.append(f"data_kinds[{index}] is missing: {', '.join(missing)}")
        if unknown or missing:
            continue
        if "{entity}" not in entry["endpoint"]:
            issues.append(f"data_kinds[{index}] endpoint must contain '{{entity}}'")
            continue
        kinds.append(DataKind(**entry))

    names = [k.name for k in kinds]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        issues.append(f"duplicate data kind name(s): {', '.join(duplicates)}")

    if issues:
        raise ConfigurationError("Invalid data_kinds configuration", field="data_kinds", issues=issues)
    return kinds
