from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .metadata import SOBJECT_URL_KEY, SObjectDescription, SObjectMetaData

_logger = logging.getLogger(__name__)

_ID_KEYS = ("Id", "id")


@runtime_checkable
class SObject(Protocol):
    """What a record type must offer for URL generation and id assignment."""

    def set_id(self, record_id: str) -> None: ...

    def api_name(self) -> str: ...

    def external_id_api_name(self) -> str: ...


@dataclass
class SObjectError:
    status_code: str = ""
    message: str = ""
    fields: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SObjectError:
        return cls(
            status_code=d.get("statusCode") or d.get("errorCode") or "",
            message=d.get("message") or "",
            fields=list(d.get("fields") or []),
        )


@dataclass
class SObjectResponse:
    """Outcome for one record of a create/upsert or a bulk DML batch."""

    id: Optional[str] = None
    success: bool = False
    created: Optional[bool] = None
    errors: List[SObjectError] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SObjectResponse:
        errors = d.get("errors") or []
        if isinstance(errors, dict):
            errors = [errors]
        return cls(
            id=d.get("id"),
            success=bool(d.get("success")),
            created=d.get("created"),
            errors=[SObjectError.from_dict(e) for e in errors if isinstance(e, dict)],
        )


def failed_results(results: List[SObjectResponse]) -> List[SObjectResponse]:
    """Per-record failures; a batch can succeed overall and still reject rows."""
    return [r for r in results if not r.success]


def record_payload(record: Any, *, exclude: tuple = ()) -> Dict[str, Any]:
    """JSON body for ``record``.

    Uses ``record.to_payload()`` when defined; otherwise dataclasses and
    mappings are converted with ``None`` values and the identifier dropped.
    """
    if hasattr(record, "to_payload"):
        data = dict(record.to_payload())
    elif dataclasses.is_dataclass(record) and not isinstance(record, type):
        data = dataclasses.asdict(record)
    elif isinstance(record, Mapping):
        data = dict(record)
    else:
        data = dict(vars(record))

    skip = set(_ID_KEYS) | set(exclude)
    return {k: v for k, v in data.items() if v is not None and k not in skip}


class SObjectMixin:
    """Single-record operations; expects ``self.metadata`` and the HTTP verbs."""

    def get_sobjects(self) -> Dict[str, SObjectMetaData]:
        """Return the cached object table."""
        return self.metadata.discover_objects()

    def describe_sobject(self, record: SObject) -> SObjectDescription:
        return self.metadata.describe_object(record.api_name())

    def get_sobject(
        self, record_id: str, record: SObject, fields: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Fetch one record by id; ``fields`` limits the returned columns."""
        uri = self.metadata.row_url(record.api_name(), record_id)
        return self.get(uri, params=_fields_param(fields))

    def insert_sobject(self, record: SObject) -> SObjectResponse:
        """Create ``record``; on success its assigned id is set on it."""
        uri = self.metadata.object_url(record.api_name(), SOBJECT_URL_KEY)
        resp = SObjectResponse.from_dict(self.post(uri, record_payload(record)) or {})
        if resp.success and resp.id:
            record.set_id(resp.id)
        else:
            _logger.warning("Insert of %s rejected: %s", record.api_name(), resp.errors)
        return resp

    def update_sobject(self, record_id: str, record: SObject) -> None:
        uri = self.metadata.row_url(record.api_name(), record_id)
        self.patch(uri, record_payload(record))

    def delete_sobject(self, record_id: str, record: SObject) -> None:
        uri = self.metadata.row_url(record.api_name(), record_id)
        self.delete(uri)

    # --------------------------- External id --------------------------

    def get_sobject_by_external_id(
        self, external_id: str, record: SObject, fields: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        uri = self._external_id_url(record, external_id)
        return self.get(uri, params=_fields_param(fields))

    def upsert_sobject_by_external_id(self, external_id: str, record: SObject) -> SObjectResponse:
        """Insert or update keyed on the record's external id field.

        ``created`` is True when the platform answered 201, False otherwise.
        """
        uri = self._external_id_url(record, external_id)
        payload = record_payload(record, exclude=(record.external_id_api_name(),))
        r = self.send("PATCH", uri, payload=payload)
        body = self._decode(r) or {}
        resp = SObjectResponse.from_dict(body) if isinstance(body, dict) else SObjectResponse()
        resp.created = r.status_code == 201
        resp.success = resp.success or not resp.errors
        if resp.id:
            record.set_id(resp.id)
        return resp

    def delete_sobject_by_external_id(self, external_id: str, record: SObject) -> None:
        uri = self._external_id_url(record, external_id)
        self.delete(uri)

    def _external_id_url(self, record: SObject, external_id: str) -> str:
        return self.metadata.external_id_url(
            record.api_name(), record.external_id_api_name(), external_id
        )


def _fields_param(fields: Optional[List[str]]) -> Optional[Dict[str, str]]:
    return {"fields": ",".join(fields)} if fields else None
