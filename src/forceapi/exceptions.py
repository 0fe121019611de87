from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional


class ForceError(RuntimeError):
    """Base class for every error raised by forceapi."""


class MissingCredentialsError(ForceError):
    """Raised when the required Salesforce settings are not present."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__("Missing required environment variables: " + ", ".join(missing))


class TransportError(ForceError):
    """Network, connection or timeout failure. Never retried."""


class MalformedResponseError(ForceError):
    """Response body did not have the expected JSON shape."""

    def __init__(self, message: str, body: str = ""):
        self.body = body
        super().__init__(message)


class NotFoundError(ForceError):
    """Object name absent from the cached metadata; no request was sent."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unable to find metadata for object: {name}")


# ----------------------------------------------------------------------
# Platform error envelope
# ----------------------------------------------------------------------
@dataclass
class ApiErrorEntry:
    code: str
    message: str = ""
    fields: List[str] = field(default_factory=list)


def parse_error_envelope(body: Any) -> Optional[List[ApiErrorEntry]]:
    """Return the error entries if ``body`` is an error envelope, else None.

    Recognised shapes:

    - REST:  ``[{"errorCode": ..., "message": ..., "fields": [...]}, ...]``
    - OAuth: ``{"error": ..., "error_description": ...}``
    - Bulk:  ``{"exceptionCode": ..., "exceptionMessage": ...}``

    An envelope only counts when at least one entry carries a non-empty code.
    """
    entries: List[ApiErrorEntry] = []

    if isinstance(body, list):
        if not body or not all(isinstance(e, dict) and "errorCode" in e for e in body):
            return None
        for e in body:
            entries.append(
                ApiErrorEntry(
                    code=e.get("errorCode") or "",
                    message=e.get("message") or "",
                    fields=list(e.get("fields") or []),
                )
            )
    elif isinstance(body, dict):
        if "error" in body and isinstance(body.get("error"), str):
            entries.append(ApiErrorEntry(body["error"], body.get("error_description") or ""))
        elif "exceptionCode" in body:
            entries.append(
                ApiErrorEntry(body.get("exceptionCode") or "", body.get("exceptionMessage") or "")
            )
        else:
            return None
    else:
        return None

    if not any(e.code for e in entries):
        return None
    return entries


class ApiError(ForceError):
    """Platform-reported failure; carries every entry of the envelope."""

    def __init__(self, errors: List[ApiErrorEntry], status_code: Optional[int] = None):
        self.errors = errors
        self.status_code = status_code
        summary = "; ".join(f"{e.code}: {e.message}" if e.message else e.code for e in errors)
        super().__init__(summary or "Unknown API error")

    @property
    def error_code(self) -> str:
        return self.errors[0].code if self.errors else ""


class SessionExpiredError(ApiError):
    """Session was still rejected after the automatic refresh."""


# ----------------------------------------------------------------------
# Bulk
# ----------------------------------------------------------------------
class BulkJobFailedError(ForceError):
    """A batch reached a terminal failure state while being polled."""

    def __init__(self, job_id: str, batch_id: str, state: str, state_message: str = ""):
        self.job_id = job_id
        self.batch_id = batch_id
        self.state = state
        self.state_message = state_message
        msg = f"Bulk operation failed: job={job_id} batch={batch_id} state={state}"
        if state_message:
            msg += f" ({state_message})"
        super().__init__(msg)


class BulkJobTimeoutError(ForceError):
    """Polling gave up before the batch reached a terminal state."""

    def __init__(self, job_id: str, batch_id: str, last_state: str):
        self.job_id = job_id
        self.batch_id = batch_id
        self.last_state = last_state
        super().__init__(
            f"Timed out waiting for batch {batch_id} of job {job_id} (last state: {last_state})"
        )


class BulkJobCancelledError(ForceError):
    """Polling was cancelled by the caller."""

    def __init__(self, job_id: str, batch_id: str):
        self.job_id = job_id
        self.batch_id = batch_id
        super().__init__(f"Cancelled while waiting for batch {batch_id} of job {job_id}")
