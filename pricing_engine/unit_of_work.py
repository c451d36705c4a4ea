"""Client-side batch of record creations committed through the composite graph API.

Every ``register_create`` returns a ``RecordReference`` token that later
registrations may use as a foreign-key placeholder. A registration that points
at an earlier reference joins that reference's graph, so a parent and its
dependents commit (or roll back) together while independent parents stay
isolated from each other.
"""

from __future__ import annotations

import itertools
import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

MAX_NODES_PER_GRAPH = 500
MAX_GRAPHS_PER_REQUEST = 75


@dataclass(frozen=True)
class RecordReference:
    reference_id: str
    object_type: str

    def to_api_string(self) -> str:
        return f"@{{{self.reference_id}.id}}"


@dataclass(frozen=True)
class RecordOutcome:
    reference: RecordReference
    record_id: str | None = None
    errors: tuple[dict[str, Any], ...] = ()

    @property
    def succeeded(self) -> bool:
        return bool(self.record_id)


@dataclass
class _Graph:
    graph_id: str
    nodes: list[tuple[RecordReference, dict[str, Any]]] = field(default_factory=list)


class UnitOfWork:
    def __init__(self) -> None:
        self._token = uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)
        self._graphs: list[_Graph] = []
        self._graph_of: dict[RecordReference, _Graph] = {}

    def __len__(self) -> int:
        return len(self._graph_of)

    def register_create(self, object_type: str, fields: dict[str, Any]) -> RecordReference:
        linked = [value for value in fields.values() if isinstance(value, RecordReference)]
        graph: _Graph | None = None
        for ref in linked:
            owner = self._graph_of.get(ref)
            if owner is None:
                raise ValueError(f"reference {ref.reference_id} does not belong to this unit of work")
            if graph is not None and owner is not graph:
                raise ValueError("a single create cannot reference records from independent graphs")
            graph = owner
        if graph is None:
            graph = _Graph(graph_id=f"g_{self._token}_{len(self._graphs) + 1}")
            self._graphs.append(graph)
        if len(graph.nodes) >= MAX_NODES_PER_GRAPH:
            raise ValueError(f"graph {graph.graph_id} exceeds {MAX_NODES_PER_GRAPH} records")

        reference = RecordReference(
            reference_id=f"ref_{self._token}_{next(self._counter)}",
            object_type=object_type,
        )
        graph.nodes.append((reference, dict(fields)))
        self._graph_of[reference] = graph
        return reference

    def graph_batches(self, *, api_prefix: str) -> Iterator[list[dict[str, Any]]]:
        payloads = [self._graph_payload(graph, api_prefix=api_prefix) for graph in self._graphs]
        for start in range(0, len(payloads), MAX_GRAPHS_PER_REQUEST):
            yield payloads[start : start + MAX_GRAPHS_PER_REQUEST]

    def parse_results(
        self,
        response: dict[str, Any],
        *,
        graph_errors: Mapping[str, dict[str, Any]] | None = None,
    ) -> dict[RecordReference, RecordOutcome]:
        """Map every registered reference to its outcome.

        ``graph_errors`` carries a request-level error per graph id for graphs
        whose commit request failed; their references report that error.
        """
        graph_errors = graph_errors or {}
        by_id = {ref.reference_id: ref for ref in self._graph_of}
        outcomes: dict[RecordReference, RecordOutcome] = {}
        for graph_result in response.get("graphs") or []:
            if not isinstance(graph_result, dict):
                continue
            graph_ok = bool(graph_result.get("isSuccessful"))
            composite = (graph_result.get("graphResponse") or {}).get("compositeResponse") or []
            for item in composite:
                ref = by_id.get(str(item.get("referenceId", "")))
                if ref is None:
                    continue
                outcomes[ref] = _outcome_for(ref, item, graph_ok=graph_ok)
        for ref, graph in self._graph_of.items():
            if ref in outcomes:
                continue
            error = graph_errors.get(graph.graph_id) or {
                "errorCode": "MISSING_RESULT",
                "message": "no result returned for reference",
            }
            outcomes[ref] = RecordOutcome(reference=ref, errors=(dict(error),))
        return outcomes

    @staticmethod
    def _graph_payload(graph: _Graph, *, api_prefix: str) -> dict[str, Any]:
        return {
            "graphId": graph.graph_id,
            "compositeRequest": [
                {
                    "method": "POST",
                    "url": f"{api_prefix}/sobjects/{ref.object_type}/",
                    "referenceId": ref.reference_id,
                    "body": {key: _serialize(value) for key, value in fields.items()},
                }
                for ref, fields in graph.nodes
            ],
        }


def _serialize(value: Any) -> Any:
    if isinstance(value, RecordReference):
        return value.to_api_string()
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _outcome_for(ref: RecordReference, item: dict[str, Any], *, graph_ok: bool) -> RecordOutcome:
    body = item.get("body")
    status = int(item.get("httpStatusCode") or 0)
    if isinstance(body, list):
        errors = tuple(x for x in body if isinstance(x, dict))
    elif isinstance(body, dict) and body.get("errors"):
        errors = tuple(x for x in body["errors"] if isinstance(x, dict))
    else:
        errors = ()
    record_id = body.get("id") if isinstance(body, dict) else None
    if graph_ok and 200 <= status < 300 and record_id:
        return RecordOutcome(reference=ref, record_id=str(record_id))
    if not errors:
        errors = ({"errorCode": "GRAPH_ROLLED_BACK", "message": "graph did not commit"},)
    return RecordOutcome(reference=ref, errors=errors)
