"""
Bulk API (``/services/async``) job orchestration.

Every high-level bulk call runs the same lifecycle:

    create job -> submit batch -> poll batch -> fetch results -> close job

The job is closed whatever happens in between. Polling is bounded by a
``PollPolicy`` and can be cancelled through a ``threading.Event``.
"""

from __future__ import annotations

import csv
import io
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import (
    BulkJobCancelledError,
    BulkJobFailedError,
    BulkJobTimeoutError,
    ForceError,
    MalformedResponseError,
)
from .sobjects import SObjectResponse, record_payload

_logger = logging.getLogger(__name__)

BULK_URI = "/services/async/{version}/job"


class JobState(str, Enum):
    OPEN = "Open"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ABORTED = "Aborted"
    CLOSED = "Closed"


class BatchState(str, Enum):
    QUEUED = "Queued"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    NOT_PROCESSED = "Not Processed"


TERMINAL_BATCH_STATES = frozenset({"Completed", "Failed", "Not Processed", "NotProcessed"})
FAILED_BATCH_STATES = frozenset({"Failed", "Not Processed", "NotProcessed"})

_CONTENT_TYPES = {"JSON": "application/json", "CSV": "text/csv"}


@dataclass
class BulkJob:
    id: str
    object: str = ""
    operation: str = ""
    content_type: str = ""
    state: str = JobState.OPEN.value

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> BulkJob:
        return cls(
            id=d.get("id") or "",
            object=d.get("object") or "",
            operation=d.get("operation") or "",
            content_type=d.get("contentType") or "",
            state=d.get("state") or "",
        )


@dataclass
class BulkBatch:
    id: str
    job_id: str = ""
    state: str = BatchState.QUEUED.value
    state_message: str = ""
    records_processed: int = 0
    records_failed: int = 0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> BulkBatch:
        return cls(
            id=d.get("id") or "",
            job_id=d.get("jobId") or "",
            state=d.get("state") or "",
            state_message=d.get("stateMessage") or "",
            records_processed=int(d.get("numberRecordsProcessed") or 0),
            records_failed=int(d.get("numberRecordsFailed") or 0),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_BATCH_STATES


@dataclass
class PollPolicy:
    """How long to wait for a batch: ``None`` means no limit."""

    interval: float = 2.0
    timeout: Optional[float] = None
    max_attempts: Optional[int] = None


class BulkMixin:
    """Bulk job lifecycle; expects ``self.metadata``, ``self.request`` and ``self.poll_policy``."""

    # --------------------------- High level ---------------------------

    def bulk_insert_sobjects(
        self,
        table: str,
        records: List[Any],
        *,
        policy: Optional[PollPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[SObjectResponse]:
        """Insert ``records`` into ``table`` through one bulk job.

        Individual rejections show up as ``success=False`` entries; they do
        not raise.
        """
        payload = [record_payload(r) for r in records]
        raw = self.run_bulk_job(
            table, "insert", "JSON", payload, policy=policy, cancel_event=cancel_event
        )
        return [SObjectResponse.from_dict(d) for d in raw]

    def bulk_update_sobjects(
        self,
        table: str,
        records: List[Any],
        *,
        policy: Optional[PollPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[SObjectResponse]:
        """Update ``records`` (each must carry its ``Id``) through one bulk job."""
        payload = []
        for r in records:
            body = record_payload(r)
            record_id = _record_id(r)
            if record_id:
                body["Id"] = record_id
            payload.append(body)
        raw = self.run_bulk_job(
            table, "update", "JSON", payload, policy=policy, cancel_event=cancel_event
        )
        return [SObjectResponse.from_dict(d) for d in raw]

    def bulk_query_sobjects(
        self,
        table: str,
        soql: str,
        *,
        content_type: str = "JSON",
        policy: Optional[PollPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Dict[str, Any]]:
        """Run ``soql`` as a bulk query job and return every result row."""
        return self.run_bulk_job(
            table, "query", content_type, soql, policy=policy, cancel_event=cancel_event
        )

    def run_bulk_job(
        self,
        table: str,
        operation: str,
        content_type: str,
        payload: Any,
        *,
        policy: Optional[PollPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Dict[str, Any]]:
        """Create, feed, wait for, read and close one single-batch job."""
        # Fail fast, before any request, on unknown objects.
        self.metadata.object_metadata(table)

        job = self.create_job(table, operation, content_type)
        try:
            batch = self.submit_batch(job, payload)
            self.wait_for_batch(job.id, batch.id, policy=policy, cancel_event=cancel_event)
            if operation == "query":
                return self.get_query_results(job, batch.id)
            return self.get_batch_results(job.id, batch.id)
        finally:
            try:
                self.close_job(job.id)
            except ForceError as e:
                _logger.warning("Failed to close bulk job %s: %s", job.id, e)

    # --------------------------- Job / batch --------------------------

    def create_job(self, table: str, operation: str, content_type: str = "JSON") -> BulkJob:
        body = self.request(
            "POST",
            self._bulk_uri(),
            payload={"operation": operation, "object": table, "contentType": content_type},
        )
        job = BulkJob.from_dict(_require_dict(body, "create job"))
        job.content_type = job.content_type or content_type
        _logger.info("Created bulk %s job %s on %s", operation, job.id, table)
        return job

    def submit_batch(self, job: BulkJob, payload: Any) -> BulkBatch:
        """Add a batch: a list of records for DML jobs, SOQL text for query jobs."""
        content_type = _CONTENT_TYPES.get(job.content_type.upper(), "application/json")
        body = self.request(
            "POST",
            f"{self._bulk_uri()}/{job.id}/batch",
            payload=payload,
            content_type=content_type,
        )
        batch = BulkBatch.from_dict(_require_dict(body, "submit batch"))
        _logger.debug("Submitted batch %s to job %s (state=%s)", batch.id, job.id, batch.state)
        return batch

    def get_batch_status(self, job_id: str, batch_id: str) -> BulkBatch:
        body = self.request("GET", f"{self._bulk_uri()}/{job_id}/batch/{batch_id}")
        return BulkBatch.from_dict(_require_dict(body, "batch status"))

    def get_job_status(self, job_id: str) -> BulkJob:
        body = self.request("GET", f"{self._bulk_uri()}/{job_id}")
        return BulkJob.from_dict(_require_dict(body, "job status"))

    def close_job(self, job_id: str) -> BulkJob:
        body = self.request("POST", f"{self._bulk_uri()}/{job_id}", payload={"state": "Closed"})
        _logger.debug("Closed bulk job %s", job_id)
        return BulkJob.from_dict(_require_dict(body, "close job"))

    def wait_for_batch(
        self,
        job_id: str,
        batch_id: str,
        *,
        policy: Optional[PollPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BulkBatch:
        """Poll until the batch is terminal; return it once Completed."""
        policy = policy or self.poll_policy
        cancel_event = cancel_event or threading.Event()
        deadline = None if policy.timeout is None else time.monotonic() + policy.timeout
        attempts = 0
        batch = self.get_batch_status(job_id, batch_id)

        while not batch.is_terminal:
            if policy.max_attempts is not None and attempts >= policy.max_attempts:
                raise BulkJobTimeoutError(job_id, batch_id, batch.state)
            delay = policy.interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise BulkJobTimeoutError(job_id, batch_id, batch.state)
                # Never sleep past the deadline.
                delay = min(delay, remaining)
            if cancel_event.wait(delay):
                raise BulkJobCancelledError(job_id, batch_id)
            if deadline is not None and time.monotonic() >= deadline:
                raise BulkJobTimeoutError(job_id, batch_id, batch.state)
            attempts += 1
            batch = self.get_batch_status(job_id, batch_id)
            _logger.info("Waiting for batch %s of job %s (state=%s)", batch_id, job_id, batch.state)

        if batch.state in FAILED_BATCH_STATES:
            _logger.error(
                "Batch %s of job %s ended as %s: %s",
                batch_id,
                job_id,
                batch.state,
                batch.state_message,
            )
            raise BulkJobFailedError(job_id, batch_id, batch.state, batch.state_message)
        return batch

    # --------------------------- Results ------------------------------

    def get_batch_results(self, job_id: str, batch_id: str) -> List[Dict[str, Any]]:
        """Raw result list: one entry per submitted record (or result ids for queries)."""
        body = self.request("GET", f"{self._bulk_uri()}/{job_id}/batch/{batch_id}/result")
        if not isinstance(body, list):
            raise MalformedResponseError("Batch result is not a JSON array", str(body))
        return body

    def get_query_results(self, job: BulkJob, batch_id: str) -> List[Dict[str, Any]]:
        """Fetch every result set of a completed query batch."""
        result_ids = self.get_batch_results(job.id, batch_id)
        rows: List[Dict[str, Any]] = []
        for result_id in result_ids:
            uri = f"{self._bulk_uri()}/{job.id}/batch/{batch_id}/result/{result_id}"
            if job.content_type.upper() == "CSV":
                text = self.request("GET", uri, raw=True)
                rows.extend(csv.DictReader(io.StringIO(text)))
            else:
                body = self.request("GET", uri)
                if not isinstance(body, list):
                    raise MalformedResponseError("Query result set is not a JSON array", str(body))
                for rec in body:
                    if isinstance(rec, dict):
                        rec.pop("attributes", None)
                    rows.append(rec)
        return rows

    def _bulk_uri(self) -> str:
        version = self.metadata.select_version()
        return BULK_URI.format(version=version.lstrip("v"))


def _require_dict(body: Any, what: str) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise MalformedResponseError(f"Unexpected {what} response", str(body))
    return body


def _record_id(record: Any) -> Optional[str]:
    if isinstance(record, dict):
        return record.get("Id") or record.get("id")
    return getattr(record, "Id", None) or getattr(record, "id", None)
