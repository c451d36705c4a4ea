from __future__ import annotations

import csv
import io
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from pricing_engine.errors import (
    BulkJobFailedError,
    BulkJobTimeoutError,
    JobCancelledError,
    RecordStoreError,
)

logger = logging.getLogger(__name__)

BULK_POLL_INTERVAL_S = 5.0
BULK_POLL_TIMEOUT_S = 300.0


class BulkJobState(str, Enum):
    OPEN = "Open"
    UPLOAD_COMPLETE = "UploadComplete"
    IN_PROGRESS = "InProgress"
    JOB_COMPLETE = "JobComplete"
    FAILED = "Failed"
    ABORTED = "Aborted"


FAILED_STATES = {BulkJobState.FAILED.value, BulkJobState.ABORTED.value}


@dataclass(frozen=True)
class BulkJobReference:
    id: str
    object_type: str
    operation: str


@dataclass(frozen=True)
class BulkJobInfo:
    id: str
    state: str
    records_processed: int = 0
    records_failed: int = 0
    error_message: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> BulkJobInfo:
        return cls(
            id=str(data.get("id") or ""),
            state=str(data.get("state") or ""),
            records_processed=int(data.get("numberRecordsProcessed") or 0),
            records_failed=int(data.get("numberRecordsFailed") or 0),
            error_message=str(data.get("errorMessage") or ""),
        )

    @property
    def records_succeeded(self) -> int:
        return max(0, self.records_processed - self.records_failed)

    @property
    def all_failed(self) -> bool:
        return self.records_processed == 0 or self.records_processed == self.records_failed


@dataclass
class RowTable:
    """Rows for a bulk upload with an explicit column order."""

    columns: tuple[str, ...]
    rows: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.columns = tuple(self.columns)
        if not self.columns:
            raise ValueError("row table needs at least one column")
        if len(set(self.columns)) != len(self.columns):
            raise ValueError("row table columns must be unique")
        allowed = set(self.columns)
        for idx, row in enumerate(self.rows):
            unknown = set(row) - allowed
            if unknown:
                raise ValueError(f"row {idx} has undeclared columns: {sorted(unknown)}")

    def __len__(self) -> int:
        return len(self.rows)

    def to_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(self.columns)
        for row in self.rows:
            writer.writerow(["" if row.get(col) is None else row.get(col) for col in self.columns])
        return buffer.getvalue()


def parse_result_csv(text: str) -> list[dict[str, str]]:
    if not text.strip():
        return []
    return [dict(row) for row in csv.DictReader(io.StringIO(text))]


class BulkStore(Protocol):
    def bulk_ingest(self, *, object_type: str, operation: str, table: RowTable) -> BulkJobReference: ...

    def get_bulk_job_info(self, reference: BulkJobReference) -> BulkJobInfo: ...

    def get_successful_rows(self, reference: BulkJobReference) -> list[dict[str, str]]: ...

    def get_failed_rows(self, reference: BulkJobReference) -> list[dict[str, str]]: ...


class BulkJobPoller:
    """Reads bulk job state until it is terminal, the deadline passes or the worker stops.

    The poller never changes job state itself. Sleeping happens on the stop
    event, so a worker shutdown wakes the loop and raises ``JobCancelledError``.
    """

    def __init__(
        self,
        *,
        interval_s: float = BULK_POLL_INTERVAL_S,
        timeout_s: float = BULK_POLL_TIMEOUT_S,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_s = max(0.0, float(interval_s))
        self.timeout_s = max(0.0, float(timeout_s))
        self._stop_event = stop_event or threading.Event()
        self._clock = clock

    def wait_for_terminal(
        self,
        store: BulkStore,
        reference: BulkJobReference,
        *,
        log: logging.Logger | logging.LoggerAdapter = logger,
    ) -> BulkJobInfo:
        deadline = self._clock() + self.timeout_s
        last_state: str | None = None
        log.info("bulk_job_polling bulk_job_id=%s object=%s", reference.id, reference.object_type)
        while True:
            if self._stop_event.is_set():
                raise JobCancelledError("worker stopping while polling bulk job", reference_id=reference.id)
            info = store.get_bulk_job_info(reference)
            last_state = info.state
            log.debug("bulk_job_state bulk_job_id=%s state=%s", reference.id, info.state)
            if info.state == BulkJobState.JOB_COMPLETE.value:
                return info
            if info.state in FAILED_STATES:
                log.error(
                    "bulk_job_failed bulk_job_id=%s state=%s message=%s",
                    reference.id,
                    info.state,
                    info.error_message,
                )
                raise BulkJobFailedError(
                    f"bulk job {info.state.lower()}: {info.error_message or 'no error message'}",
                    state=info.state,
                    reference_id=reference.id,
                )
            remaining = deadline - self._clock()
            if remaining <= 0:
                log.error("bulk_job_timeout bulk_job_id=%s last_state=%s", reference.id, last_state)
                raise BulkJobTimeoutError(
                    f"bulk job did not finish within {self.timeout_s:.0f}s (last state {last_state})",
                    last_state=last_state,
                    reference_id=reference.id,
                )
            if self._stop_event.wait(min(self.interval_s, remaining)):
                raise JobCancelledError("worker stopping while polling bulk job", reference_id=reference.id)


@dataclass(frozen=True)
class BulkStageResult:
    reference: BulkJobReference
    info: BulkJobInfo
    failed_rows: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "bulk_job_id": self.reference.id,
            "object": self.reference.object_type,
            "operation": self.reference.operation,
            "state": self.info.state,
            "processed": self.info.records_processed,
            "failed": self.info.records_failed,
        }


def run_bulk_stage(
    store: BulkStore,
    *,
    object_type: str,
    operation: str,
    table: RowTable,
    poller: BulkJobPoller,
    log: logging.Logger | logging.LoggerAdapter = logger,
) -> BulkStageResult:
    """Submit one bulk operation, wait for it and collect failed-row diagnostics."""
    reference = store.bulk_ingest(object_type=object_type, operation=operation, table=table)
    log.info(
        "bulk_job_submitted bulk_job_id=%s object=%s operation=%s rows=%s",
        reference.id,
        object_type,
        operation,
        len(table),
    )
    info = poller.wait_for_terminal(store, reference, log=log)
    log.info(
        "bulk_job_complete bulk_job_id=%s state=%s processed=%s failed=%s",
        reference.id,
        info.state,
        info.records_processed,
        info.records_failed,
    )

    failed_rows: list[dict[str, str]] = []
    if info.records_failed > 0:
        try:
            failed_rows = store.get_failed_rows(reference)
        except RecordStoreError as exc:
            log.error("bulk_job_failed_rows_unavailable bulk_job_id=%s error=%s", reference.id, exc)
        else:
            log.warning(
                "bulk_job_partial_failure bulk_job_id=%s failed=%s sample=%s",
                reference.id,
                info.records_failed,
                [row.get("sf__Error", "") for row in failed_rows[:5]],
            )
    return BulkStageResult(reference=reference, info=info, failed_rows=failed_rows)
