from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pricing_engine.errors import MalformedEnvelopeError
from pricing_engine.security import SecurityContext

DEFAULT_DATA_COUNT = 10


class JobType(str, Enum):
    QUOTE = "quote"
    DATA = "data"


class DataJobPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    operation: Literal["create", "delete"]
    count: int = Field(default=DEFAULT_DATA_COUNT, ge=1)


class QuoteJobPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    soql_where_clause: str | None = Field(default=None, alias="soqlWhereClause")


PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.QUOTE: QuoteJobPayload,
    JobType.DATA: DataJobPayload,
}


@dataclass(frozen=True)
class JobEnvelope:
    job_id: str
    job_type: JobType
    security_context: SecurityContext
    payload: DataJobPayload | QuoteJobPayload


def decode_message(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEnvelopeError("message is not valid UTF-8", code="ENVELOPE_NOT_JSON") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedEnvelopeError(f"message is not valid JSON: {exc.msg}", code="ENVELOPE_NOT_JSON") from exc
    if not isinstance(data, dict):
        raise MalformedEnvelopeError("message must be a JSON object", code="ENVELOPE_NOT_JSON")
    return data


def resolve_job_type(data: dict[str, Any]) -> JobType | None:
    raw = data.get("jobType")
    if not isinstance(raw, str):
        return None
    try:
        return JobType(raw)
    except ValueError:
        return None


def parse_payload(job_type: JobType, data: dict[str, Any]) -> DataJobPayload | QuoteJobPayload:
    model = PAYLOAD_MODELS[job_type]
    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedEnvelopeError(
            f"invalid {job_type.value} payload fields: {fields}",
            code="ENVELOPE_PAYLOAD_INVALID",
        ) from exc


def build_envelope(
    *,
    job_type: JobType,
    security_context: SecurityContext,
    fields: dict[str, Any],
    job_id: str | None = None,
) -> dict[str, Any]:
    return {
        "jobId": job_id or str(uuid.uuid4()),
        "jobType": job_type.value,
        "securityContext": security_context.to_payload(),
        **fields,
    }


class BatchExecutionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    soql_where_clause: str = Field(alias="soqlWhereClause", min_length=1)


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
