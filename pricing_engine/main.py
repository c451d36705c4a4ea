"""HTTP producer: turns API calls into job envelopes on the jobs channel.

The producer never touches the record store. It validates the caller's
context, stamps a job id and publishes; the worker does the rest.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pricing_engine.channel import create_channel_from_env
from pricing_engine.errors import MalformedEnvelopeError
from pricing_engine.schemas import BatchExecutionRequest, JobType, build_envelope, error_envelope
from pricing_engine.security import SecurityContext

logger = logging.getLogger(__name__)

CLIENT_CONTEXT_HEADER = "x-client-context"
DEFAULT_OPPORTUNITY_COUNT = 10


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
        ),
    )


def _opportunity_count(raw: str | None) -> int:
    try:
        count = int(str(raw).strip())
    except (TypeError, ValueError):
        return DEFAULT_OPPORTUNITY_COUNT
    return count if count > 0 else DEFAULT_OPPORTUNITY_COUNT


def _security_context_from_request(request: Request) -> SecurityContext:
    raw = request.headers.get(CLIENT_CONTEXT_HEADER, "").strip()
    if not raw:
        raise MalformedEnvelopeError(f"{CLIENT_CONTEXT_HEADER} header is required", code="SECURITY_CONTEXT_MISSING")
    return SecurityContext.from_client_context_header(raw)


def create_app(channel: Any | None = None) -> FastAPI:
    app = FastAPI(title="Pricing Engine Job Producer", version="1.0.0")
    app.state.channel = channel if channel is not None else create_channel_from_env()

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = request.state.trace_id
        return response

    @app.exception_handler(MalformedEnvelopeError)
    async def handle_bad_context(request: Request, exc: MalformedEnvelopeError):
        logger.warning("request_rejected path=%s code=%s reason=%s", request.url.path, exc.code, exc.message)
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=False,
            status_code=401,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="request validation failed",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    def _publish(request: Request, *, job_type: JobType, fields: dict[str, Any]) -> JSONResponse:
        context = _security_context_from_request(request)
        envelope = build_envelope(job_type=job_type, security_context=context, fields=fields)
        try:
            receivers = app.state.channel.publish(json.dumps(envelope))
        except Exception as exc:
            logger.error(
                "job_publish_failed job_id=%s job_type=%s error=%s",
                envelope["jobId"],
                job_type.value,
                exc,
            )
            return _error_response(
                request,
                code="JOB_PUBLISH_FAILED",
                message="failed to publish job",
                error_class="external_transport",
                retryable=True,
                status_code=500,
            )
        logger.info(
            "job_published job_id=%s job_type=%s org_id=%s receivers=%s",
            envelope["jobId"],
            job_type.value,
            context.org_id,
            receivers,
        )
        return JSONResponse(status_code=202, content={"jobId": envelope["jobId"]})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/executebatch")
    def execute_batch(payload: BatchExecutionRequest, request: Request) -> JSONResponse:
        return _publish(
            request,
            job_type=JobType.QUOTE,
            fields={"soqlWhereClause": payload.soql_where_clause},
        )

    @app.post("/api/data/create")
    def data_create(request: Request, numberOfOpportunities: str | None = None) -> JSONResponse:
        return _publish(
            request,
            job_type=JobType.DATA,
            fields={"operation": "create", "count": _opportunity_count(numberOfOpportunities)},
        )

    @app.post("/api/data/delete")
    def data_delete(request: Request) -> JSONResponse:
        return _publish(request, job_type=JobType.DATA, fields={"operation": "delete"})

    return app
