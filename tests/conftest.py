import base64
import json
import pathlib
import sys
from typing import Any

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pricing_engine.bulk import BulkJobInfo, BulkJobReference, RowTable
from pricing_engine.record_store import Record
from pricing_engine.security import SecurityContext
from pricing_engine.unit_of_work import UnitOfWork

API_PREFIX = "/services/data/v59.0"


def make_record(object_type: str, children: dict[str, list[Record]] | None = None, **fields: Any) -> Record:
    return Record(object_type=object_type, fields=dict(fields), children=dict(children or {}))


class FakeRecordStore:
    """In-memory record store that speaks the handler-facing client interface."""

    def __init__(
        self,
        *,
        queries: dict[str, list[Record]] | None = None,
        fail_opportunities: set[str] | None = None,
        bulk_infos: dict[str, list[BulkJobInfo]] | None = None,
        successful_rows: dict[str, list[dict[str, str]]] | None = None,
        failed_rows: dict[str, list[dict[str, str]]] | None = None,
    ) -> None:
        self.queries = dict(queries or {})
        self.fail_opportunities = set(fail_opportunities or ())
        self.bulk_infos = {key: list(value) for key, value in (bulk_infos or {}).items()}
        self.successful_rows = dict(successful_rows or {})
        self.failed_rows = dict(failed_rows or {})
        self.executed: list[str] = []
        self.commits: list[UnitOfWork] = []
        self.graphs: list[dict[str, Any]] = []
        self.bulk_jobs: list[tuple[BulkJobReference, RowTable]] = []
        self.closed = False

    def query_all(self, soql: str) -> list[Record]:
        self.executed.append(soql)
        for key, records in self.queries.items():
            if key in soql:
                return list(records)
        return []

    def new_unit_of_work(self) -> UnitOfWork:
        return UnitOfWork()

    def commit(self, unit_of_work: UnitOfWork):
        self.commits.append(unit_of_work)
        results = []
        for batch in unit_of_work.graph_batches(api_prefix=API_PREFIX):
            for graph in batch:
                self.graphs.append(graph)
                nodes = graph["compositeRequest"]
                ok = not any(node["body"].get("OpportunityId") in self.fail_opportunities for node in nodes)
                results.append(
                    {
                        "graphId": graph["graphId"],
                        "isSuccessful": ok,
                        "graphResponse": {
                            "compositeResponse": [
                                {
                                    "referenceId": node["referenceId"],
                                    "httpStatusCode": 201 if ok else 400,
                                    "body": (
                                        {"id": f"0Q0_{node['referenceId']}", "success": True, "errors": []}
                                        if ok
                                        else [{"errorCode": "FIELD_CUSTOM_VALIDATION_EXCEPTION", "message": "rejected"}]
                                    ),
                                }
                                for node in nodes
                            ]
                        },
                    }
                )
        return unit_of_work.parse_results({"graphs": results})

    def bulk_ingest(self, *, object_type: str, operation: str, table: RowTable) -> BulkJobReference:
        reference = BulkJobReference(id=f"750_{len(self.bulk_jobs) + 1}", object_type=object_type, operation=operation)
        self.bulk_jobs.append((reference, table))
        return reference

    def _table(self, reference: BulkJobReference) -> RowTable:
        for ref, table in self.bulk_jobs:
            if ref == reference:
                return table
        raise KeyError(reference.id)

    def get_bulk_job_info(self, reference: BulkJobReference) -> BulkJobInfo:
        scripted = self.bulk_infos.get(reference.object_type)
        if scripted:
            info = scripted.pop(0) if len(scripted) > 1 else scripted[0]
            return BulkJobInfo(
                id=reference.id,
                state=info.state,
                records_processed=info.records_processed,
                records_failed=info.records_failed,
                error_message=info.error_message,
            )
        table = self._table(reference)
        return BulkJobInfo(id=reference.id, state="JobComplete", records_processed=len(table))

    def get_successful_rows(self, reference: BulkJobReference) -> list[dict[str, str]]:
        if reference.object_type in self.successful_rows:
            return list(self.successful_rows[reference.object_type])
        table = self._table(reference)
        return [{"sf__Id": f"006_{idx}", "sf__Created": "true", **row} for idx, row in enumerate(table.rows)]

    def get_failed_rows(self, reference: BulkJobReference) -> list[dict[str, str]]:
        return list(self.failed_rows.get(reference.object_type, []))

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def context_payload() -> dict[str, str]:
    return {
        "accessToken": "00Dxx0000000001!AQ0AQexampletoken",
        "apiVersion": "59.0",
        "orgId": "00Dxx0000000001",
        "domainUrl": "https://example.my.salesforce.com",
        "userId": "005xx0000000001",
        "namespace": "",
    }


@pytest.fixture()
def security_context(context_payload) -> SecurityContext:
    return SecurityContext.from_payload(context_payload)


@pytest.fixture()
def client_context_header() -> str:
    raw = {
        "accessToken": "00Dxx0000000001!AQ0AQexampletoken",
        "apiVersion": "59.0",
        "orgId": "00Dxx0000000001",
        "orgDomainUrl": "https://example.my.salesforce.com",
        "requestId": "req-1",
        "namespace": "",
        "userContext": {"userId": "005xx0000000001", "username": "admin@example.com"},
    }
    return base64.b64encode(json.dumps(raw).encode("utf-8")).decode("ascii")


@pytest.fixture()
def fake_store_cls():
    return FakeRecordStore


@pytest.fixture()
def record_factory():
    return make_record
