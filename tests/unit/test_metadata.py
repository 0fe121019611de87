from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from forceapi.exceptions import NotFoundError
from forceapi.metadata import MetadataCache, SObjectField, all_fields_string

ACCOUNT_DESCRIBE = {
    "name": "Account",
    "queryable": True,
    "fields": [
        {"name": "Id", "type": "id"},
        {"name": "Name", "type": "string"},
        {"name": "Site__c", "type": "location"},
        {"name": "Phone", "type": "phone"},
        {"name": "Ext__c", "type": "string", "externalId": True},
    ],
}


class FakeApi:
    """Serves canned bodies per path and records every path fetched."""

    def __init__(self, routes: Dict[str, Any]):
        self.routes = routes
        self.calls: List[str] = []

    def get(self, path: str, params: Optional[dict] = None) -> Any:
        self.calls.append(path)
        return self.routes[path]


def routes() -> Dict[str, Any]:
    base = "/services/data/v60.0/sobjects"
    return {
        "/services/data": [
            {"label": "A", "version": "58.0", "url": "/services/data/v58.0"},
            {"label": "C", "version": "60.0", "url": "/services/data/v60.0"},
            {"label": "B", "version": "59.0", "url": "/services/data/v59.0"},
        ],
        "/services/data/v60.0/": {"sobjects": base, "query": "/services/data/v60.0/query"},
        base: {
            "maxBatchSize": 200,
            "sobjects": [
                {
                    "name": "Account",
                    "queryable": True,
                    "urls": {
                        "sobject": f"{base}/Account",
                        "describe": f"{base}/Account/describe",
                        "rowTemplate": f"{base}/Account/{{ID}}",
                    },
                },
                {
                    "name": "Contact",
                    "urls": {
                        "sobject": f"{base}/Contact",
                        "describe": f"{base}/Contact/describe",
                        "rowTemplate": f"{base}/Contact/{{ID}}",
                    },
                },
            ],
        },
        f"{base}/Account/describe": ACCOUNT_DESCRIBE,
        f"{base}/Contact/describe": {"name": "Contact", "fields": [{"name": "Id", "type": "id"}]},
    }


@pytest.fixture
def cache():
    return MetadataCache(FakeApi(routes()))


def test_discovery_chain_order(cache):
    cache.discover()

    assert cache.api.calls == [
        "/services/data",
        "/services/data/v60.0/",
        "/services/data/v60.0/sobjects",
    ]
    assert cache.version == "v60.0"
    assert cache.max_batch_size == 200
    assert set(cache.sobjects) == {"Account", "Contact"}


def test_discovery_is_idempotent(cache):
    versions = cache.discover_versions()
    resources = cache.discover_resources("v60.0")
    objects = cache.discover_objects()
    calls_after_first = list(cache.api.calls)

    assert cache.discover_versions() is versions
    assert cache.discover_resources("v60.0") is resources
    assert cache.discover_objects() is objects
    cache.discover()
    assert cache.api.calls == calls_after_first


def test_select_version_prefers_requested(cache):
    assert cache.select_version("58.0") == "v58.0"
    assert cache.api.calls == []


def test_select_version_picks_latest(cache):
    assert cache.select_version() == "v60.0"


def test_describe_is_cached(cache):
    cache.discover()
    before = len(cache.api.calls)

    first = cache.describe_object("Account")
    second = cache.describe_object("Account")

    assert first is second
    assert first.all_fields == second.all_fields == "Id, Name, Phone, Ext__c"
    assert len(cache.api.calls) == before + 1
    assert first.external_id_fields == ["Ext__c"]


def test_all_fields_excludes_location_and_keeps_order():
    fields = [
        SObjectField("A", "string"),
        SObjectField("Loc", "location"),
        SObjectField("B", "double"),
        SObjectField("C", "reference"),
    ]

    assert all_fields_string(fields) == "A, B, C"


def test_all_fields_leading_location():
    fields = [SObjectField("Loc", "location"), SObjectField("A", "string")]

    assert all_fields_string(fields) == "A"


def test_select_all_soql(cache):
    cache.discover()
    desc = cache.describe_object("Contact")

    assert desc.select_all_soql() == "SELECT Id FROM Contact"
    assert desc.select_all_soql("Id = '003'") == "SELECT Id FROM Contact WHERE Id = '003'"


def test_describe_unknown_object_makes_no_call(cache):
    cache.discover()
    before = len(cache.api.calls)

    with pytest.raises(NotFoundError):
        cache.describe_object("Nope__c")

    assert len(cache.api.calls) == before


def test_lookup_before_discovery_is_not_found(cache):
    with pytest.raises(NotFoundError):
        cache.object_metadata("Account")
    assert cache.api.calls == []


def test_url_helpers(cache):
    cache.discover()

    assert cache.row_url("Account", "001xx") == "/services/data/v60.0/sobjects/Account/001xx"
    assert (
        cache.external_id_url("Contact", "Email__c", "a@b.com")
        == "/services/data/v60.0/sobjects/Contact/Email__c/a@b.com"
    )


def test_missing_resource_is_not_found(cache):
    cache.discover()

    with pytest.raises(NotFoundError):
        cache.resource_url("limits")


def test_describe_all(cache):
    descs = cache.describe_all()

    assert set(descs) == {"Account", "Contact"}
    assert descs["Contact"].all_fields == "Id"


@pytest.mark.parametrize(
    "value, segment",
    [
        ("a@b.com", "a@b.com"),
        ("A?B#1", "A%3FB%231"),
        ("dept/42", "dept%2F42"),
        ("two words", "two%20words"),
    ],
)
def test_external_id_value_is_one_path_segment(cache, value, segment):
    cache.discover()

    url = cache.external_id_url("Contact", "Code__c", value)

    assert url == f"/services/data/v60.0/sobjects/Contact/Code__c/{segment}"
