"""Quote generation for parent records selected by a caller-supplied filter.

One unit of work covers the whole invocation: a ``Quote`` per opportunity plus
one discounted ``QuoteLineItem`` per opportunity line item. Only quote-level
outcomes are reconciled after the commit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any

from pricing_engine.lookups import STANDARD_PRICEBOOK_QUERY, require_first_id
from pricing_engine.pricing import DiscountPolicy, apply_discount
from pricing_engine.record_store import Record
from pricing_engine.schemas import JobEnvelope
from pricing_engine.unit_of_work import RecordReference

logger = logging.getLogger(__name__)

LINE_ITEMS_RELATIONSHIP = "OpportunityLineItems"
QUOTE_EXPIRY_DAYS = 30
QUOTE_NAME_MAX = 80

OPPORTUNITY_QUERY = """
SELECT Id, Name, AccountId, CloseDate, StageName, Amount,
       (SELECT Id, Product2Id, Quantity, UnitPrice, PricebookEntryId FROM OpportunityLineItems)
FROM Opportunity
WHERE {where}
"""


@dataclass
class QuoteJobResult:
    parents_found: int = 0
    registered: int = 0
    line_items: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    committed: bool = False
    failed_opportunity_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PreparedQuote:
    opportunity_id: str
    quote_fields: dict[str, Any]
    line_fields: list[dict[str, Any]]


class QuoteJobHandler:
    def __init__(
        self,
        *,
        discount_policy: DiscountPolicy,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.discount_policy = discount_policy
        self._today = today

    def prepare(self, parent: Record, lines: list[Record], *, pricebook_id: str) -> PreparedQuote:
        opportunity_id = parent.id
        if not opportunity_id:
            raise ValueError("opportunity record has no Id")
        close_date = date.fromisoformat(str(parent.get("CloseDate", "")))
        rate = self.discount_policy.discount_for(parent)

        line_fields: list[dict[str, Any]] = []
        for line in lines:
            unit_price = line.get("UnitPrice")
            entry_id = line.get("PricebookEntryId")
            if unit_price is None or not entry_id:
                raise ValueError(f"line item {line.id} is missing UnitPrice or PricebookEntryId")
            line_fields.append(
                {
                    "PricebookEntryId": entry_id,
                    "Quantity": line.get("Quantity"),
                    "UnitPrice": apply_discount(unit_price, rate),
                }
            )

        name = f"Quote for {parent.get('Name', '')} - {self._today().isoformat()}"
        return PreparedQuote(
            opportunity_id=opportunity_id,
            quote_fields={
                "Name": name[:QUOTE_NAME_MAX],
                "OpportunityId": opportunity_id,
                "Pricebook2Id": pricebook_id,
                "ExpirationDate": (close_date + timedelta(days=QUOTE_EXPIRY_DAYS)).isoformat(),
                "Status": "Draft",
            },
            line_fields=line_fields,
        )

    def __call__(
        self,
        envelope: JobEnvelope,
        store: Any,
        log: logging.Logger | logging.LoggerAdapter = logger,
    ) -> QuoteJobResult:
        result = QuoteJobResult()
        where = (getattr(envelope.payload, "soql_where_clause", None) or "").strip()
        if not where:
            log.warning("quote_job_no_filter job_id=%s", envelope.job_id)
            return result

        pricebook_id = require_first_id(store, STANDARD_PRICEBOOK_QUERY, label="standard pricebook")
        parents = store.query_all(OPPORTUNITY_QUERY.format(where=where))
        result.parents_found = len(parents)
        if not parents:
            log.warning("quote_job_no_opportunities job_id=%s where=%s", envelope.job_id, where)
            return result

        unit_of_work = store.new_unit_of_work()
        quote_refs: dict[str, RecordReference] = {}
        for parent in parents:
            lines = parent.children.get(LINE_ITEMS_RELATIONSHIP) or []
            if not lines:
                log.warning("quote_skipped_no_line_items job_id=%s opportunity_id=%s", envelope.job_id, parent.id)
                result.skipped += 1
                continue
            try:
                prepared = self.prepare(parent, lines, pricebook_id=pricebook_id)
            except Exception as exc:
                # Skip this opportunity only; the rest of the batch continues.
                log.error(
                    "quote_prepare_failed job_id=%s opportunity_id=%s error=%s",
                    envelope.job_id,
                    parent.id,
                    exc,
                )
                result.skipped += 1
                continue

            quote_ref = unit_of_work.register_create("Quote", prepared.quote_fields)
            for line in prepared.line_fields:
                unit_of_work.register_create("QuoteLineItem", {"QuoteId": quote_ref, **line})
            quote_refs[prepared.opportunity_id] = quote_ref
            result.line_items += len(prepared.line_fields)

        result.registered = len(quote_refs)
        if not quote_refs:
            log.warning("quote_job_nothing_registered job_id=%s", envelope.job_id)
            return result

        log.info(
            "quote_job_committing job_id=%s quotes=%s line_items=%s",
            envelope.job_id,
            result.registered,
            result.line_items,
        )
        outcomes = store.commit(unit_of_work)
        result.committed = True

        for opportunity_id, quote_ref in quote_refs.items():
            outcome = outcomes.get(quote_ref)
            if outcome is not None and outcome.succeeded:
                result.succeeded += 1
                continue
            result.failed += 1
            result.failed_opportunity_ids.append(opportunity_id)
            log.error(
                "quote_create_failed job_id=%s opportunity_id=%s ref=%s errors=%s",
                envelope.job_id,
                opportunity_id,
                quote_ref.reference_id,
                list(outcome.errors) if outcome is not None else "no result",
            )

        log.info(
            "quote_job_complete job_id=%s succeeded=%s failed=%s skipped=%s",
            envelope.job_id,
            result.succeeded,
            result.failed,
            result.skipped,
        )
        return result
