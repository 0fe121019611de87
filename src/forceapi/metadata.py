"""Process-lifetime cache of API versions, resources, object table and describes.

Discovery is a dependency chain: the version string parameterises the
resources URL, and the ``sobjects`` resource parameterises the object list.
Once populated, nothing here is ever invalidated.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .exceptions import MalformedResponseError, NotFoundError

_logger = logging.getLogger(__name__)

VERSIONS_URI = "/services/data"
RESOURCES_URI = "/services/data/{version}/"

SOBJECTS_KEY = "sobjects"
LIMITS_KEY = "limits"
QUERY_KEY = "query"
QUERY_ALL_KEY = "queryAll"

SOBJECT_URL_KEY = "sobject"
DESCRIBE_URL_KEY = "describe"
ROW_TEMPLATE_KEY = "rowTemplate"
ID_PLACEHOLDER = "{ID}"

# The query language cannot project compound geolocation fields directly.
_UNSELECTABLE_FIELD_TYPES = frozenset({"location"})


@dataclass
class ApiVersion:
    label: str
    url: str
    version: str

    @property
    def path_segment(self) -> str:
        """``v60.0`` form used in REST URLs."""
        return self.url.rstrip("/").split("/")[-1] or f"v{self.version}"


@dataclass
class SObjectMetaData:
    """One row of the global object list."""

    name: str
    label: str = ""
    urls: Dict[str, str] = field(default_factory=dict)
    custom: bool = False
    queryable: bool = False
    createable: bool = False
    updateable: bool = False
    deletable: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SObjectMetaData:
        return cls(
            name=d["name"],
            label=d.get("label") or "",
            urls=dict(d.get("urls") or {}),
            custom=bool(d.get("custom")),
            queryable=bool(d.get("queryable")),
            createable=bool(d.get("createable")),
            updateable=bool(d.get("updateable")),
            deletable=bool(d.get("deletable")),
            raw=d,
        )


@dataclass
class SObjectField:
    name: str
    type: str = ""
    label: str = ""
    external_id: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SObjectField:
        return cls(
            name=d["name"],
            type=d.get("type") or "",
            label=d.get("label") or "",
            external_id=bool(d.get("externalId")),
            raw=d,
        )


@dataclass
class SObjectDescription:
    name: str
    fields: List[SObjectField] = field(default_factory=list)
    urls: Dict[str, str] = field(default_factory=dict)
    queryable: bool = False
    createable: bool = False
    updateable: bool = False
    deletable: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    # Derived: comma-joined selectable field names, used for "SELECT *" queries.
    all_fields: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SObjectDescription:
        fields = [SObjectField.from_dict(f) for f in d.get("fields") or []]
        return cls(
            name=d.get("name") or "",
            fields=fields,
            urls=dict(d.get("urls") or {}),
            queryable=bool(d.get("queryable")),
            createable=bool(d.get("createable")),
            updateable=bool(d.get("updateable")),
            deletable=bool(d.get("deletable")),
            raw=d,
            all_fields=all_fields_string(fields),
        )

    @property
    def external_id_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.external_id]

    def select_all_soql(self, where: Optional[str] = None) -> str:
        soql = f"SELECT {self.all_fields} FROM {self.name}"
        if where:
            soql += f" WHERE {where}"
        return soql


def all_fields_string(fields: List[SObjectField]) -> str:
    """Join every selectable field name with ``", "``, preserving order."""
    return ", ".join(f.name for f in fields if f.type not in _UNSELECTABLE_FIELD_TYPES)


class MetadataCache:
    """Discovery results for one client.

    ``api`` is anything with a ``get(path, params=None)`` returning decoded
    JSON: in practice the owning ``ForceAPI``.
    """

    def __init__(self, api) -> None:
        self.api = api
        self.versions: Optional[List[ApiVersion]] = None
        self.version: Optional[str] = None
        self.resources: Dict[str, Dict[str, str]] = {}
        self.sobjects: Optional[Dict[str, SObjectMetaData]] = None
        self.max_batch_size: Optional[int] = None
        self.descriptions: Dict[str, SObjectDescription] = {}
        self._lock = threading.RLock()

    # --------------------------- Discovery ----------------------------

    def discover_versions(self) -> List[ApiVersion]:
        """Available API versions, oldest first as the platform reports them."""
        with self._lock:
            if self.versions is None:
                body = self.api.get(VERSIONS_URI)
                if not isinstance(body, list):
                    raise MalformedResponseError("Version list is not a JSON array", str(body))
                self.versions = [
                    ApiVersion(
                        v.get("label") or "", v.get("url") or "", str(v.get("version") or "")
                    )
                    for v in body
                ]
                _logger.debug("Discovered %d API versions", len(self.versions))
            return self.versions

    def select_version(self, requested: Optional[str] = None) -> str:
        """Pick ``requested`` (e.g. ``v60.0``) or the latest available version."""
        with self._lock:
            if self.version is None:
                if requested:
                    self.version = requested if requested.startswith("v") else f"v{requested}"
                else:
                    versions = self.discover_versions()
                    if not versions:
                        raise MalformedResponseError("Platform reported no API versions")
                    best = max(versions, key=lambda v: float(v.version or "0"))
                    self.version = best.path_segment
                _logger.debug("Selected API version: %s", self.version)
            return self.version

    def discover_resources(self, version: Optional[str] = None) -> Dict[str, str]:
        """Resource-name → URL map for ``version`` (default: selected version)."""
        version = version or self.select_version()
        with self._lock:
            if version not in self.resources:
                body = self.api.get(RESOURCES_URI.format(version=version))
                if not isinstance(body, dict):
                    raise MalformedResponseError("Resource map is not a JSON object", str(body))
                self.resources[version] = body
            return self.resources[version]

    def discover_objects(self) -> Dict[str, SObjectMetaData]:
        """Fetch the global object list and index it by name."""
        with self._lock:
            if self.sobjects is None:
                uri = self.resource_url(SOBJECTS_KEY)
                body = self.api.get(uri)
                if not isinstance(body, dict):
                    raise MalformedResponseError("Object list is not a JSON object", str(body))
                self.max_batch_size = body.get("maxBatchSize")
                self.sobjects = {
                    o["name"]: SObjectMetaData.from_dict(o) for o in body.get("sobjects") or []
                }
                _logger.info(
                    "Discovered %d sObjects (maxBatchSize=%s)",
                    len(self.sobjects),
                    self.max_batch_size,
                )
            return self.sobjects

    def discover(self, requested_version: Optional[str] = None) -> None:
        """Run the full versions → resources → objects chain."""
        self.select_version(requested_version)
        self.discover_resources()
        self.discover_objects()

    # --------------------------- Lookups ------------------------------

    def resource_url(self, key: str) -> str:
        resources = self.discover_resources()
        try:
            return resources[key]
        except KeyError:
            raise NotFoundError(key) from None

    def object_metadata(self, name: str) -> SObjectMetaData:
        """Table entry for ``name``; never touches the network."""
        if not self.sobjects or name not in self.sobjects:
            raise NotFoundError(name)
        return self.sobjects[name]

    def object_url(self, name: str, key: str) -> str:
        meta = self.object_metadata(name)
        try:
            return meta.urls[key]
        except KeyError:
            raise NotFoundError(f"{name}.urls[{key}]") from None

    def row_url(self, name: str, record_id: str) -> str:
        return self.object_url(name, ROW_TEMPLATE_KEY).replace(ID_PLACEHOLDER, record_id, 1)

    def external_id_url(self, name: str, external_id_field: str, external_id: str) -> str:
        """Row URL keyed on an external id; the value is percent-encoded as one segment."""
        value = quote(str(external_id), safe="@")
        return f"{self.object_url(name, SOBJECT_URL_KEY)}/{external_id_field}/{value}"

    def describe_object(self, name: str) -> SObjectDescription:
        """Cached describe for ``name``; fetched on first reference."""
        desc = self.descriptions.get(name)
        if desc is not None:
            return desc

        uri = self.object_url(name, DESCRIBE_URL_KEY)
        with self._lock:
            if name not in self.descriptions:
                body = self.api.get(uri)
                if not isinstance(body, dict):
                    raise MalformedResponseError(
                        f"Describe of {name} is not a JSON object", str(body)
                    )
                self.descriptions[name] = SObjectDescription.from_dict(body)
                _logger.debug("Cached describe for %s", name)
            return self.descriptions[name]

    def describe_all(self) -> Dict[str, SObjectDescription]:
        """Describe every object in the table (one request per uncached object)."""
        for name in self.discover_objects():
            self.describe_object(name)
        return dict(self.descriptions)
