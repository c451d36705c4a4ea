from __future__ import annotations

from typing import Protocol

from pricing_engine.errors import FatalPreconditionError
from pricing_engine.record_store import Record

STANDARD_PRICEBOOK_QUERY = "SELECT Id FROM Pricebook2 WHERE IsStandard = true LIMIT 1"
ANY_ACCOUNT_QUERY = "SELECT Id FROM Account LIMIT 1"


class QueryStore(Protocol):
    def query_all(self, soql: str) -> list[Record]: ...


def require_first_id(store: QueryStore, soql: str, *, label: str) -> str:
    """Return the Id of the first row, or fail the job when the lookup is empty."""
    records = store.query_all(soql)
    if not records:
        raise FatalPreconditionError(f"{label} not found: query returned 0 records")
    record_id = records[0].id
    if not record_id:
        raise FatalPreconditionError(f"{label} not found: first record has no Id")
    return record_id


def soql_literal(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"
