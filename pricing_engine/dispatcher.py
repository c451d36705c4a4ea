from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pricing_engine.bulk import BulkJobPoller
from pricing_engine.data_jobs import DataJobHandler
from pricing_engine.errors import JobError, MalformedEnvelopeError
from pricing_engine.pricing import RegionDiscountPolicy
from pricing_engine.quote_jobs import QuoteJobHandler
from pricing_engine.record_store import RecordStoreClient
from pricing_engine.schemas import JobEnvelope, JobType, decode_message, parse_payload, resolve_job_type
from pricing_engine.security import SecurityContext, redact_sensitive
from pricing_engine.settings import WorkerSettings

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobEnvelope, Any, logging.LoggerAdapter], Any]
StoreFactory = Callable[[SecurityContext], Any]


class DispatchOutcome(str, Enum):
    DROPPED_MALFORMED = "dropped_malformed"
    DROPPED_UNROUTABLE = "dropped_unroutable"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class DispatchStats:
    received: int = 0
    dropped: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def mark_received(self) -> None:
        with self._lock:
            self.received += 1

    def mark_dispatched(self) -> None:
        with self._lock:
            self.dispatched += 1

    def record(self, outcome: DispatchOutcome) -> None:
        with self._lock:
            if outcome in (DispatchOutcome.DROPPED_MALFORMED, DispatchOutcome.DROPPED_UNROUTABLE):
                self.dropped += 1
            elif outcome == DispatchOutcome.SUCCEEDED:
                self.succeeded += 1
            else:
                self.failed += 1

    def as_dict(self) -> dict[str, int]:
        with self._lock:
            return {
                "received": self.received,
                "dropped": self.dropped,
                "dispatched": self.dispatched,
                "succeeded": self.succeeded,
                "failed": self.failed,
            }


def build_handler_table(settings: WorkerSettings, *, stop_event: threading.Event) -> dict[JobType, JobHandler]:
    poller = BulkJobPoller(
        interval_s=settings.bulk_poll_interval_s,
        timeout_s=settings.bulk_poll_timeout_s,
        stop_event=stop_event,
    )
    policy = RegionDiscountPolicy(region=settings.discount_region, region_field=settings.region_field)
    return {
        JobType.QUOTE: QuoteJobHandler(discount_policy=policy),
        JobType.DATA: DataJobHandler(poller=poller),
    }


class Dispatcher:
    """Routes channel messages to job handlers by ``jobType``.

    ``on_message`` only schedules work, so a multi-minute bulk poll never blocks
    delivery of the next message. Handler failures are logged and contained.

    The pool is bounded by ``max_workers`` but its backlog is not: when every
    worker is busy (for example four data jobs polling bulk state for up to five
    minutes each) later jobs, quote jobs included, wait in the queue and a burst
    grows it without limit. ``pending`` and the ``job_queued`` log line expose
    the depth so operators can raise ``WORKER_MAX_CONCURRENT_JOBS``.
    """

    def __init__(
        self,
        *,
        handlers: Mapping[JobType, JobHandler],
        store_factory: StoreFactory,
        max_workers: int = 4,
        executor: Executor | None = None,
    ) -> None:
        missing = [job_type.value for job_type in JobType if job_type not in handlers]
        if missing:
            raise ValueError(f"no handler registered for job types: {', '.join(missing)}")
        self._handlers = dict(handlers)
        self._store_factory = store_factory
        self.max_workers = max(1, int(max_workers))
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="job",
        )
        self.stats = DispatchStats()
        self._pending = 0
        self._pending_lock = threading.Lock()

    @property
    def pending(self) -> int:
        """Messages submitted but not yet finished, running ones included."""
        with self._pending_lock:
            return self._pending

    def on_message(self, raw: str | bytes) -> Future[DispatchOutcome]:
        with self._pending_lock:
            self._pending += 1
            pending = self._pending
        try:
            future = self._executor.submit(self._process_queued, raw)
        except RuntimeError:
            with self._pending_lock:
                self._pending -= 1
            raise
        backlog = max(0, pending - self.max_workers)
        if backlog > 0:
            logger.warning("job_queued pending=%s backlog=%s workers=%s", pending, backlog, self.max_workers)
        else:
            logger.debug("job_queued pending=%s backlog=0 workers=%s", pending, self.max_workers)
        return future

    def _process_queued(self, raw: str | bytes) -> DispatchOutcome:
        try:
            return self.process(raw)
        finally:
            with self._pending_lock:
                self._pending -= 1

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def _parse(self, raw: str | bytes) -> JobEnvelope | DispatchOutcome:
        try:
            data = decode_message(raw)
        except MalformedEnvelopeError as exc:
            logger.error("envelope_dropped code=%s reason=%s", exc.code, exc.message)
            return DispatchOutcome.DROPPED_MALFORMED

        job_id = str(data.get("jobId") or "").strip()
        job_type_raw = data.get("jobType")
        try:
            if not job_id:
                raise MalformedEnvelopeError("jobId is missing", code="ENVELOPE_JOB_ID_MISSING")
            context = SecurityContext.from_payload(data.get("securityContext"))
        except MalformedEnvelopeError as exc:
            logger.error(
                "envelope_dropped job_id=%s job_type=%s code=%s reason=%s envelope=%s",
                job_id or "-",
                job_type_raw,
                exc.code,
                exc.message,
                redact_sensitive(data),
            )
            return DispatchOutcome.DROPPED_MALFORMED

        job_type = resolve_job_type(data)
        if job_type is None:
            logger.warning("envelope_unroutable job_id=%s job_type=%s", job_id, job_type_raw)
            return DispatchOutcome.DROPPED_UNROUTABLE

        try:
            payload = parse_payload(job_type, data)
        except MalformedEnvelopeError as exc:
            logger.error(
                "envelope_dropped job_id=%s job_type=%s code=%s reason=%s",
                job_id,
                job_type.value,
                exc.code,
                exc.message,
            )
            return DispatchOutcome.DROPPED_MALFORMED
        return JobEnvelope(job_id=job_id, job_type=job_type, security_context=context, payload=payload)

    def process(self, raw: str | bytes) -> DispatchOutcome:
        self.stats.mark_received()
        parsed = self._parse(raw)
        if isinstance(parsed, DispatchOutcome):
            self.stats.record(parsed)
            return parsed

        envelope = parsed
        outcome = self._run(envelope)
        self.stats.record(outcome)
        return outcome

    def _run(self, envelope: JobEnvelope) -> DispatchOutcome:
        log = logging.LoggerAdapter(logger, {"job_id": envelope.job_id, "job_type": envelope.job_type.value})
        self.stats.mark_dispatched()
        log.info(
            "job_dispatched job_id=%s job_type=%s context=%s",
            envelope.job_id,
            envelope.job_type.value,
            envelope.security_context.describe(),
        )
        store: Any = None
        try:
            store = self._store_factory(envelope.security_context)
            result = self._handlers[envelope.job_type](envelope, store, log)
        except JobError as exc:
            log.error(
                "job_failed job_id=%s job_type=%s code=%s class=%s ref=%s error=%s",
                envelope.job_id,
                envelope.job_type.value,
                exc.code,
                exc.error_class,
                exc.reference_id or "-",
                exc.message,
            )
            return DispatchOutcome.FAILED
        except Exception:
            # Keep the dispatcher alive on unexpected handler failures.
            log.exception("job_crashed job_id=%s job_type=%s", envelope.job_id, envelope.job_type.value)
            return DispatchOutcome.FAILED
        finally:
            close = getattr(store, "close", None)
            if callable(close):
                close()

        summary = result.as_dict() if hasattr(result, "as_dict") else result
        log.info("job_succeeded job_id=%s job_type=%s result=%s", envelope.job_id, envelope.job_type.value, summary)
        return DispatchOutcome.SUCCEEDED


def create_dispatcher(
    settings: WorkerSettings,
    *,
    stop_event: threading.Event,
    store_factory: StoreFactory | None = None,
) -> Dispatcher:
    def _default_store_factory(context: SecurityContext) -> RecordStoreClient:
        return RecordStoreClient.from_security_context(context, timeout_s=settings.http_timeout_s)

    return Dispatcher(
        handlers=build_handler_table(settings, stop_event=stop_event),
        store_factory=store_factory or _default_store_factory,
        max_workers=settings.max_concurrent_jobs,
    )
