from __future__ import annotations

import logging
from datetime import date

import pytest

from pricing_engine.errors import FatalPreconditionError
from pricing_engine.pricing import RegionDiscountPolicy
from pricing_engine.quote_jobs import QuoteJobHandler
from pricing_engine.schemas import JobEnvelope, JobType, QuoteJobPayload

TODAY = date(2026, 10, 19)


def _handler(region: str = "NAMER") -> QuoteJobHandler:
    return QuoteJobHandler(discount_policy=RegionDiscountPolicy(region=region), today=lambda: TODAY)


def _envelope(security_context, where: str | None = "StageName = 'Closed Won'") -> JobEnvelope:
    return JobEnvelope(
        job_id="job_quote",
        job_type=JobType.QUOTE,
        security_context=security_context,
        payload=QuoteJobPayload(soqlWhereClause=where),
    )


@pytest.fixture()
def opportunity(record_factory):
    def _build(opp_id: str, *, close_date: str = "2026-12-01", lines: int = 2):
        children = {
            "OpportunityLineItems": [
                record_factory(
                    "OpportunityLineItem",
                    Id=f"00k{opp_id}{idx}",
                    PricebookEntryId=f"01u{idx}",
                    Product2Id=f"01t{idx}",
                    Quantity=idx + 1,
                    UnitPrice=100.0 + idx,
                )
                for idx in range(lines)
            ]
        } if lines else {}
        return record_factory(
            "Opportunity",
            children=children,
            Id=opp_id,
            Name=f"Opp {opp_id}",
            CloseDate=close_date,
            StageName="Closed Won",
        )

    return _build


def _store(fake_store_cls, record_factory, parents, **kwargs):
    return fake_store_cls(
        queries={
            "FROM Pricebook2": [record_factory("Pricebook2", Id="01sSTD")],
            "FROM Opportunity": parents,
        },
        **kwargs,
    )


def test_quote_job_registers_discounted_quotes_and_commits_once(
    security_context, fake_store_cls, record_factory, opportunity
):
    store = _store(fake_store_cls, record_factory, [opportunity("006A"), opportunity("006B", lines=1)])

    result = _handler("EMEA")(_envelope(security_context), store)

    assert len(store.commits) == 1
    assert result.registered == 2
    assert result.line_items == 3
    assert result.succeeded == 2
    assert result.failed == 0

    quote_node, *line_nodes = store.graphs[0]["compositeRequest"]
    assert quote_node["body"]["OpportunityId"] == "006A"
    assert quote_node["body"]["Status"] == "Draft"
    assert quote_node["body"]["Pricebook2Id"] == "01sSTD"
    assert quote_node["body"]["ExpirationDate"] == "2026-12-31"
    assert quote_node["body"]["Name"] == "Quote for Opp 006A - 2026-10-19"
    assert [node["body"]["UnitPrice"] for node in line_nodes] == [100.0 * (1 - 0.15), 101.0 * (1 - 0.15)]
    assert all(node["body"]["QuoteId"] == f"@{{{quote_node['referenceId']}.id}}" for node in line_nodes)


def test_quote_job_filter_is_inserted_into_parent_query(security_context, fake_store_cls, record_factory, opportunity):
    store = _store(fake_store_cls, record_factory, [opportunity("006A")])
    _handler()(_envelope(security_context, "Name = 'Acme'"), store)
    parent_query = store.executed[1]
    assert "WHERE Name = 'Acme'" in parent_query
    assert "FROM OpportunityLineItems" in parent_query


def test_quote_job_with_no_matching_parents_never_commits(security_context, fake_store_cls, record_factory, caplog):
    store = _store(fake_store_cls, record_factory, [])
    with caplog.at_level(logging.WARNING):
        result = _handler()(_envelope(security_context, "Name = 'X'"), store)
    assert store.commits == []
    assert result.registered == 0
    assert "quote_job_no_opportunities" in caplog.text


def test_quote_job_without_filter_is_a_warning_no_op(security_context, fake_store_cls, record_factory, caplog):
    store = _store(fake_store_cls, record_factory, [])
    with caplog.at_level(logging.WARNING):
        result = _handler()(_envelope(security_context, where=None), store)
    assert store.executed == []
    assert result.committed is False
    assert "quote_job_no_filter" in caplog.text


def test_parents_without_line_items_are_skipped(security_context, fake_store_cls, record_factory, opportunity):
    store = _store(fake_store_cls, record_factory, [opportunity("006A", lines=0), opportunity("006B")])

    result = _handler()(_envelope(security_context), store)

    registered_opps = {
        node["body"].get("OpportunityId") for graph in store.graphs for node in graph["compositeRequest"]
    }
    assert "006A" not in registered_opps
    assert result.skipped == 1
    assert result.registered == 1


def test_bad_close_date_skips_only_that_parent(security_context, fake_store_cls, record_factory, opportunity, caplog):
    store = _store(
        fake_store_cls,
        record_factory,
        [opportunity("006A", close_date="not-a-date"), opportunity("006B")],
    )
    with caplog.at_level(logging.ERROR):
        result = _handler()(_envelope(security_context), store)
    assert result.skipped == 1
    assert result.succeeded == 1
    assert "quote_prepare_failed" in caplog.text
    assert "006A" in caplog.text


def test_only_failed_parent_is_tallied_as_failure(security_context, fake_store_cls, record_factory, opportunity):
    store = _store(
        fake_store_cls,
        record_factory,
        [opportunity("006A"), opportunity("006B"), opportunity("006C")],
        fail_opportunities={"006B"},
    )

    result = _handler()(_envelope(security_context), store)

    assert result.succeeded == 2
    assert result.failed == 1
    assert result.failed_opportunity_ids == ["006B"]


def test_missing_standard_pricebook_is_fatal(security_context, fake_store_cls, opportunity):
    store = fake_store_cls(queries={"FROM Opportunity": [opportunity("006A")]})
    with pytest.raises(FatalPreconditionError):
        _handler()(_envelope(security_context), store)
    assert store.commits == []


def test_prepare_rejects_line_without_unit_price(record_factory, opportunity):
    parent = opportunity("006A")
    line = record_factory("OpportunityLineItem", Id="00kX", PricebookEntryId="01u0", Quantity=1)
    with pytest.raises(ValueError):
        _handler().prepare(parent, [line], pricebook_id="01sSTD")


def test_out_of_range_policy_rate_fails_only_that_parent(security_context, fake_store_cls, record_factory, opportunity):
    class SkewedPolicy:
        def discount_for(self, record):
            return 1.5 if record.id == "006A" else 0.1

    store = _store(fake_store_cls, record_factory, [opportunity("006A"), opportunity("006B")])
    handler = QuoteJobHandler(discount_policy=SkewedPolicy(), today=lambda: TODAY)

    result = handler(_envelope(security_context), store)

    assert result.skipped == 1
    assert result.succeeded == 1
    assert {node["body"].get("OpportunityId") for graph in store.graphs for node in graph["compositeRequest"]} == {
        "006B",
        None,
    }


def test_filter_literal_reaches_parent_query_unchanged(security_context, fake_store_cls, record_factory):
    store = _store(fake_store_cls, record_factory, [])
    _handler()(_envelope(security_context, "Name = 'Acme  Corp'"), store)
    assert "WHERE Name = 'Acme  Corp'" in store.executed[1]
