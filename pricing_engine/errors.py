from __future__ import annotations


class JobError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool = False,
        reference_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.reference_id = reference_id

    def __str__(self) -> str:
        if self.reference_id:
            return f"{self.message} (ref={self.reference_id})"
        return self.message


class MalformedEnvelopeError(JobError):
    def __init__(self, message: str, *, code: str = "ENVELOPE_MALFORMED") -> None:
        super().__init__(code=code, message=message, error_class="malformed_input")


class FatalPreconditionError(JobError):
    def __init__(self, message: str, *, code: str = "PRECONDITION_MISSING") -> None:
        super().__init__(code=code, message=message, error_class="fatal_precondition")


class RecordStoreError(JobError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "RECORD_STORE_ERROR",
        status_code: int | None = None,
        details: list[dict[str, object]] | None = None,
        retryable: bool = False,
        reference_id: str | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="external_transport",
            retryable=retryable,
            reference_id=reference_id,
        )
        self.status_code = status_code
        self.details = list(details or [])


class BulkSubmissionError(RecordStoreError):
    def __init__(
        self,
        message: str,
        *,
        details: list[dict[str, object]] | None = None,
        reference_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="BULK_SUBMISSION_FAILED",
            details=details,
            reference_id=reference_id,
        )


class BulkJobFailedError(RecordStoreError):
    def __init__(self, message: str, *, state: str, reference_id: str) -> None:
        super().__init__(message, code="BULK_JOB_FAILED", reference_id=reference_id)
        self.state = state


class BulkJobTimeoutError(RecordStoreError):
    def __init__(self, message: str, *, last_state: str | None, reference_id: str) -> None:
        super().__init__(message, code="BULK_JOB_TIMEOUT", retryable=True, reference_id=reference_id)
        self.last_state = last_state


class JobCancelledError(JobError):
    def __init__(self, message: str, *, reference_id: str | None = None) -> None:
        super().__init__(
            code="JOB_CANCELLED",
            message=message,
            error_class="cancelled",
            reference_id=reference_id,
        )
