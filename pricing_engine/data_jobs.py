from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from pricing_engine.bulk import BulkJobPoller, BulkStageResult, RowTable, run_bulk_stage
from pricing_engine.errors import FatalPreconditionError
from pricing_engine.lookups import ANY_ACCOUNT_QUERY, STANDARD_PRICEBOOK_QUERY, require_first_id, soql_literal
from pricing_engine.record_store import Record
from pricing_engine.schemas import DataJobPayload, JobEnvelope

logger = logging.getLogger(__name__)

SAMPLE_NAME_PREFIX = "Sample Opp"
SAMPLE_CLOSE_DAYS = 30
LINE_ITEMS_PER_OPPORTUNITY = 2
MAX_PRICEBOOK_ENTRIES = 10
MAX_DELETE_QUERY = 5000

OPPORTUNITY_COLUMNS = ("Name", "AccountId", "StageName", "CloseDate", "Pricebook2Id")
LINE_ITEM_COLUMNS = ("OpportunityId", "PricebookEntryId", "Product2Id", "Quantity", "UnitPrice")
DELETE_QUERY = f"SELECT Id FROM Opportunity WHERE Name LIKE '{SAMPLE_NAME_PREFIX} %' LIMIT {MAX_DELETE_QUERY}"


@dataclass(frozen=True)
class PricebookEntry:
    id: str
    product_id: str


@dataclass(frozen=True)
class Prerequisites:
    account_id: str
    pricebook_id: str
    entries: list[PricebookEntry]


@dataclass
class DataJobResult:
    operation: str
    stages: list[BulkStageResult] = field(default_factory=list)
    parent_ids: list[str] = field(default_factory=list)
    child_stage_skipped: bool = False
    candidates: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "stages": [stage.as_dict() for stage in self.stages],
            "parent_ids": len(self.parent_ids),
            "child_stage_skipped": self.child_stage_skipped,
            "candidates": self.candidates,
        }


def pricebook_entries_query(pricebook_id: str) -> str:
    return (
        "SELECT Id, Product2Id FROM PricebookEntry "
        f"WHERE Pricebook2Id = {soql_literal(pricebook_id)} AND IsActive = true "
        f"LIMIT {MAX_PRICEBOOK_ENTRIES}"
    )


def resolve_prerequisites(store: Any) -> Prerequisites:
    account_id = require_first_id(store, ANY_ACCOUNT_QUERY, label="account")
    pricebook_id = require_first_id(store, STANDARD_PRICEBOOK_QUERY, label="standard pricebook")
    rows: list[Record] = store.query_all(pricebook_entries_query(pricebook_id))
    entries = [
        PricebookEntry(id=str(row.id), product_id=str(row.get("Product2Id")))
        for row in rows
        if row.id and row.get("Product2Id")
    ]
    if not entries:
        raise FatalPreconditionError("no active pricebook entries with Product2Id found")
    return Prerequisites(account_id=account_id, pricebook_id=pricebook_id, entries=entries)


def generate_opportunities(
    count: int,
    prerequisites: Prerequisites,
    *,
    today: date,
    stamp: int,
) -> RowTable:
    close_date = (today + timedelta(days=SAMPLE_CLOSE_DAYS)).isoformat()
    rows = [
        {
            "Name": f"{SAMPLE_NAME_PREFIX} {stamp}-{i}",
            "AccountId": prerequisites.account_id,
            "StageName": "Prospecting",
            "CloseDate": close_date,
            "Pricebook2Id": prerequisites.pricebook_id,
        }
        for i in range(count)
    ]
    return RowTable(columns=OPPORTUNITY_COLUMNS, rows=rows)


def generate_line_items(
    opportunity_ids: list[str],
    entries: list[PricebookEntry],
    *,
    rng: random.Random,
) -> RowTable:
    rows: list[dict[str, Any]] = []
    for opportunity_id in opportunity_ids:
        for _ in range(LINE_ITEMS_PER_OPPORTUNITY):
            entry = rng.choice(entries)
            rows.append(
                {
                    "OpportunityId": opportunity_id,
                    "PricebookEntryId": entry.id,
                    "Product2Id": entry.product_id,
                    "Quantity": rng.randint(1, 10),
                    "UnitPrice": rng.randint(10, 109),
                }
            )
    return RowTable(columns=LINE_ITEM_COLUMNS, rows=rows)


class DataJobHandler:
    """Creates or deletes sample opportunity data through bulk ingest jobs."""

    def __init__(
        self,
        *,
        poller: BulkJobPoller,
        rng: random.Random | None = None,
        today: Callable[[], date] = date.today,
        stamp: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self.poller = poller
        self._rng = rng or random.Random()
        self._today = today
        self._stamp = stamp

    def __call__(
        self,
        envelope: JobEnvelope,
        store: Any,
        log: logging.Logger | logging.LoggerAdapter = logger,
    ) -> DataJobResult:
        payload = envelope.payload
        if not isinstance(payload, DataJobPayload):
            raise TypeError("data job handler needs a DataJobPayload")
        if payload.operation == "create":
            return self.create(envelope.job_id, payload.count, store, log)
        return self.delete(envelope.job_id, store, log)

    def create(
        self,
        job_id: str,
        count: int,
        store: Any,
        log: logging.Logger | logging.LoggerAdapter = logger,
    ) -> DataJobResult:
        result = DataJobResult(operation="create")
        log.info("data_create_started job_id=%s count=%s", job_id, count)
        prerequisites = resolve_prerequisites(store)

        parents = generate_opportunities(
            max(1, int(count)),
            prerequisites,
            today=self._today(),
            stamp=self._stamp(),
        )
        parent_stage = run_bulk_stage(
            store,
            object_type="Opportunity",
            operation="insert",
            table=parents,
            poller=self.poller,
            log=log,
        )
        result.stages.append(parent_stage)
        if parent_stage.info.all_failed:
            log.error(
                "data_create_no_parents job_id=%s bulk_job_id=%s, skipping line items",
                job_id,
                parent_stage.reference.id,
            )
            result.child_stage_skipped = True
            return result

        successful = store.get_successful_rows(parent_stage.reference)
        result.parent_ids = [row["sf__Id"] for row in successful if row.get("sf__Id")]
        if not result.parent_ids:
            log.warning(
                "data_create_no_parent_ids job_id=%s bulk_job_id=%s, skipping line items",
                job_id,
                parent_stage.reference.id,
            )
            result.child_stage_skipped = True
            return result

        children = generate_line_items(result.parent_ids, prerequisites.entries, rng=self._rng)
        log.info("data_create_line_items job_id=%s parents=%s rows=%s", job_id, len(result.parent_ids), len(children))
        child_stage = run_bulk_stage(
            store,
            object_type="OpportunityLineItem",
            operation="insert",
            table=children,
            poller=self.poller,
            log=log,
        )
        result.stages.append(child_stage)
        log.info("data_create_complete job_id=%s", job_id)
        return result

    def delete(
        self,
        job_id: str,
        store: Any,
        log: logging.Logger | logging.LoggerAdapter = logger,
    ) -> DataJobResult:
        result = DataJobResult(operation="delete")
        candidates: list[Record] = store.query_all(DELETE_QUERY)
        ids = [record.id for record in candidates if record.id][:MAX_DELETE_QUERY]
        result.candidates = len(ids)
        if not ids:
            log.info("data_delete_nothing_to_delete job_id=%s", job_id)
            return result

        log.info("data_delete_started job_id=%s candidates=%s", job_id, len(ids))
        table = RowTable(columns=("Id",), rows=[{"Id": record_id} for record_id in ids])
        stage = run_bulk_stage(
            store,
            object_type="Opportunity",
            operation="hardDelete",
            table=table,
            poller=self.poller,
            log=log,
        )
        result.stages.append(stage)
        log.info("data_delete_complete job_id=%s", job_id)
        return result
