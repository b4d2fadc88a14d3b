"""
Error taxonomy for the ingestion and reconstruction pipeline.

Only request-envelope failures (``BatchFormatError``, batch-level
``PayloadTooLargeError``) and an unavailable event store surface to the
ingestion caller as hard errors. Everything else is contained and reported
as a structured partial result.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ObservaError(Exception):
    """Base class for all pipeline errors."""

    code = "OBSERVA_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(ObservaError):
    """A single event is malformed; the rest of the batch continues."""

    code = "VALIDATION_ERROR"


class PayloadTooLargeError(ObservaError):
    """An event or a whole batch exceeds its size ceiling."""

    code = "PAYLOAD_TOO_LARGE"

    def __init__(self, message: str, *, limit: int, received: int, limit_type: str):
        super().__init__(
            message,
            {"limit": limit, "received": received, "limit_type": limit_type},
        )
        self.limit = limit
        self.received = received
        self.limit_type = limit_type


class BatchFormatError(ObservaError):
    """The request body is not a JSON array or NDJSON stream of events."""

    code = "INVALID_PAYLOAD"


class QuarantineError(ObservaError):
    """The event store cannot represent the event; it is dropped and logged."""

    code = "QUARANTINED"


class EventStoreUnavailable(ObservaError):
    """The event store could not complete a write or read."""

    code = "EVENT_STORE_UNAVAILABLE"


class ReconstructionAmbiguity(ObservaError):
    """A span's parent could not be resolved and a fallback parent was chosen."""

    code = "RECONSTRUCTION_AMBIGUITY"


class EscalationUnavailable(ObservaError):
    """The analysis queue backend is down or slow; ingestion is unaffected."""

    code = "ESCALATION_UNAVAILABLE"


class ScoringServiceError(ObservaError):
    """The external scoring collaborator failed or returned an error."""

    code = "SCORING_SERVICE_ERROR"


class AnalysisJobFailure(ObservaError):
    """An analysis job exhausted its retries."""

    code = "ANALYSIS_JOB_FAILED"

    def __init__(self, job_id: str, attempts: int, last_error: Optional[str]):
        super().__init__(
            f"Analysis job {job_id} failed after {attempts} attempts",
            {"job_id": job_id, "attempts": attempts, "last_error": last_error},
        )
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
