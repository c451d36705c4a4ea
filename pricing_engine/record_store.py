"""REST client for the external record store.

Covers three capabilities used by the job handlers:

- query with transparent pagination (``query`` / ``query_more`` / ``query_all``)
- unit-of-work commits through the composite graph endpoint
- Bulk API 2.0 ingest jobs (submit, status, successful/failed results)

Every transport or HTTP failure surfaces as ``RecordStoreError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests

from pricing_engine.bulk import BulkJobInfo, BulkJobReference, RowTable, parse_result_csv
from pricing_engine.errors import BulkSubmissionError, RecordStoreError
from pricing_engine.security import SecurityContext
from pricing_engine.unit_of_work import RecordOutcome, RecordReference, UnitOfWork

logger = logging.getLogger(__name__)

BULK_OPERATIONS = {"insert", "hardDelete"}


@dataclass
class Record:
    object_type: str
    fields: dict[str, Any]
    children: dict[str, list[Record]] = field(default_factory=dict)
    continuations: dict[str, str] = field(default_factory=dict, repr=False)

    @property
    def id(self) -> str | None:
        value = self.fields.get("Id") or self.fields.get("id")
        return str(value) if value else None

    def get(self, name: str, default: Any = None) -> Any:
        value = self.fields.get(name)
        return default if value is None else value


@dataclass
class QueryPage:
    records: list[Record]
    done: bool = True
    next_page_token: str | None = None
    total_size: int = 0


def parse_record(raw: dict[str, Any]) -> Record:
    attributes = raw.get("attributes") if isinstance(raw.get("attributes"), dict) else {}
    record = Record(object_type=str(attributes.get("type") or ""), fields={})
    for key, value in raw.items():
        if key == "attributes":
            continue
        if isinstance(value, dict) and isinstance(value.get("records"), list):
            record.children[key] = [parse_record(x) for x in value["records"] if isinstance(x, dict)]
            if not value.get("done", True) and value.get("nextRecordsUrl"):
                record.continuations[key] = str(value["nextRecordsUrl"])
            continue
        record.fields[key] = value
    return record


def parse_query_page(data: dict[str, Any]) -> QueryPage:
    records = [parse_record(x) for x in data.get("records") or [] if isinstance(x, dict)]
    return QueryPage(
        records=records,
        done=bool(data.get("done", True)),
        next_page_token=str(data["nextRecordsUrl"]) if data.get("nextRecordsUrl") else None,
        total_size=int(data.get("totalSize") or len(records)),
    )


def _error_details(response: requests.Response) -> list[dict[str, object]]:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return [{"errorCode": f"HTTP_{response.status_code}", "message": text[:500]}] if text else []
    if isinstance(body, list):
        return [x for x in body if isinstance(x, dict)]
    if isinstance(body, dict):
        return [body]
    return []


class RecordStoreClient:
    """Authenticated handle scoped to a single job's security context."""

    def __init__(
        self,
        *,
        base_url: str,
        api_version: str,
        access_token: str,
        timeout_s: float = 30.0,
        session: requests.Session | None = None,
        org_id: str = "",
    ) -> None:
        if not base_url.strip() or not access_token.strip():
            raise ValueError("base_url and access_token are required for the record store client")
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version.lstrip("v")
        self.org_id = org_id
        self._timeout_s = timeout_s
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            }
        )

    @classmethod
    def from_security_context(
        cls,
        context: SecurityContext,
        *,
        timeout_s: float = 30.0,
        session: requests.Session | None = None,
    ) -> RecordStoreClient:
        return cls(
            base_url=context.domain_url,
            api_version=context.api_version,
            access_token=context.access_token,
            timeout_s=timeout_s,
            session=session,
            org_id=context.org_id,
        )

    @property
    def api_prefix(self) -> str:
        return f"/services/data/v{self.api_version}"

    def close(self) -> None:
        self._session.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        data: str | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        expected: tuple[int, ...] = (200,),
    ) -> requests.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data.encode("utf-8") if data is not None else None,
                headers=headers,
                timeout=self._timeout_s,
            )
        except requests.exceptions.Timeout as exc:
            raise RecordStoreError(
                f"{method} {path} timed out after {self._timeout_s}s",
                code="RECORD_STORE_TIMEOUT",
                retryable=True,
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise RecordStoreError(
                f"{method} {path} failed: {exc}",
                code="RECORD_STORE_UNAVAILABLE",
                retryable=True,
            ) from exc
        if response.status_code not in expected:
            details = _error_details(response)
            first = str(details[0].get("message", "")) if details else ""
            raise RecordStoreError(
                f"{method} {path} returned HTTP {response.status_code}: {first}".rstrip(": "),
                code="RECORD_STORE_HTTP_ERROR",
                status_code=response.status_code,
                details=details,
                retryable=response.status_code >= 500,
            )
        return response

    def _json(self, response: requests.Response, *, path: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RecordStoreError(f"{path} returned a non-JSON body", code="RECORD_STORE_SCHEMA_INVALID") from exc

    # ========== Query ==========

    def query(self, soql: str) -> QueryPage:
        path = f"{self.api_prefix}/query"
        response = self._request("GET", path, params={"q": soql.strip()})
        return parse_query_page(self._json(response, path=path))

    def query_more(self, next_page_token: str) -> QueryPage:
        response = self._request("GET", next_page_token)
        return parse_query_page(self._json(response, path=next_page_token))

    def query_all(self, soql: str) -> list[Record]:
        """Run ``soql`` and follow every continuation page, nested child pages included."""
        page = self.query(soql)
        records = list(page.records)
        while not page.done and page.next_page_token:
            page = self.query_more(page.next_page_token)
            records.extend(page.records)
        if len(records) != page.total_size:
            logger.warning(
                "query_size_mismatch org_id=%s fetched=%s total_size=%s",
                self.org_id,
                len(records),
                page.total_size,
            )
        for record in records:
            self._resolve_child_pages(record)
        return records

    def _resolve_child_pages(self, record: Record) -> None:
        while record.continuations:
            relationship, token = record.continuations.popitem()
            page = self.query_more(token)
            record.children.setdefault(relationship, []).extend(page.records)
            if not page.done and page.next_page_token:
                record.continuations[relationship] = page.next_page_token

    # ========== Unit of work ==========

    def new_unit_of_work(self) -> UnitOfWork:
        return UnitOfWork()

    def commit(self, unit_of_work: UnitOfWork) -> dict[RecordReference, RecordOutcome]:
        """Send the unit of work in graph batches and return an outcome per reference.

        A failure on the first request raises, since nothing was written. A
        failure on a later request stops sending: references in the failed
        batch carry the request error, references in unsent batches report
        ``MISSING_RESULT`` and outcomes of earlier batches are kept.
        """
        if len(unit_of_work) == 0:
            raise ValueError("cannot commit an empty unit of work")
        path = f"{self.api_prefix}/composite/graph"
        batches = list(unit_of_work.graph_batches(api_prefix=self.api_prefix))
        graphs: list[Any] = []
        graph_errors: dict[str, dict[str, Any]] = {}
        for index, batch in enumerate(batches):
            logger.debug("composite_graph_commit org_id=%s graphs=%s", self.org_id, len(batch))
            try:
                body = self._json(self._request("POST", path, json_body={"graphs": batch}), path=path)
            except RecordStoreError as exc:
                if index == 0:
                    raise
                logger.error(
                    "composite_graph_commit_failed org_id=%s batch=%s/%s committed_graphs=%s error=%s",
                    self.org_id,
                    index + 1,
                    len(batches),
                    len(graphs),
                    exc,
                )
                error = {"errorCode": exc.code, "message": exc.message}
                graph_errors.update({graph["graphId"]: error for graph in batch})
                break
            if isinstance(body, dict):
                graphs.extend(body.get("graphs") or [])
        return unit_of_work.parse_results({"graphs": graphs}, graph_errors=graph_errors)

    # ========== Bulk API 2.0 ==========

    def bulk_ingest(self, *, object_type: str, operation: str, table: RowTable) -> BulkJobReference:
        if operation not in BULK_OPERATIONS:
            raise ValueError(f"unsupported bulk operation: {operation}")
        if len(table) == 0:
            raise ValueError("bulk ingest requires at least one row")
        jobs_path = f"{self.api_prefix}/jobs/ingest"
        try:
            created = self._json(
                self._request(
                    "POST",
                    jobs_path,
                    json_body={
                        "object": object_type,
                        "operation": operation,
                        "contentType": "CSV",
                        "lineEnding": "LF",
                        "columnDelimiter": "COMMA",
                    },
                    expected=(200, 201),
                ),
                path=jobs_path,
            )
        except RecordStoreError as exc:
            raise BulkSubmissionError(
                f"bulk job creation for {object_type} failed: {exc.message}",
                details=exc.details,
            ) from exc
        if not isinstance(created, dict) or not created.get("id"):
            raise BulkSubmissionError(
                f"bulk job creation for {object_type} returned unexpected structure",
                details=[created] if isinstance(created, dict) else [],
            )
        reference = BulkJobReference(id=str(created["id"]), object_type=object_type, operation=operation)

        try:
            self._request(
                "PUT",
                f"{jobs_path}/{reference.id}/batches",
                data=table.to_csv(),
                headers={"Content-Type": "text/csv"},
                expected=(201,),
            )
            self._request(
                "PATCH",
                f"{jobs_path}/{reference.id}",
                json_body={"state": "UploadComplete"},
                expected=(200,),
            )
        except RecordStoreError as exc:
            raise BulkSubmissionError(
                f"bulk upload for {object_type} failed: {exc.message}",
                details=exc.details,
                reference_id=reference.id,
            ) from exc
        return reference

    def get_bulk_job_info(self, reference: BulkJobReference) -> BulkJobInfo:
        path = f"{self.api_prefix}/jobs/ingest/{reference.id}"
        try:
            data = self._json(self._request("GET", path), path=path)
        except RecordStoreError as exc:
            exc.reference_id = reference.id
            raise
        if not isinstance(data, dict) or not data.get("state"):
            raise RecordStoreError(
                "bulk job status response missing state",
                code="RECORD_STORE_SCHEMA_INVALID",
                reference_id=reference.id,
            )
        return BulkJobInfo.from_api(data)

    def get_successful_rows(self, reference: BulkJobReference) -> list[dict[str, str]]:
        return self._bulk_results(reference, "successfulResults")

    def get_failed_rows(self, reference: BulkJobReference) -> list[dict[str, str]]:
        return self._bulk_results(reference, "failedResults")

    def _bulk_results(self, reference: BulkJobReference, kind: str) -> list[dict[str, str]]:
        path = f"{self.api_prefix}/jobs/ingest/{reference.id}/{kind}/"
        try:
            response = self._request("GET", path, headers={"Accept": "text/csv"})
        except RecordStoreError as exc:
            exc.reference_id = reference.id
            raise
        return parse_result_csv(response.text)
