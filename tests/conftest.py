import json

import pytest

from forceapi.api import ForceAPI, ForceConfig
from forceapi.metadata import SObjectMetaData

INSTANCE = "https://myorg.my.salesforce.com"
VERSION = "v60.0"

RESOURCES = {
    "sobjects": f"/services/data/{VERSION}/sobjects",
    "limits": f"/services/data/{VERSION}/limits",
    "query": f"/services/data/{VERSION}/query",
    "queryAll": f"/services/data/{VERSION}/queryAll",
}


def sobject_row(name: str, **flags) -> dict:
    base = f"/services/data/{VERSION}/sobjects/{name}"
    row = {
        "name": name,
        "label": name,
        "queryable": True,
        "urls": {
            "sobject": base,
            "describe": f"{base}/describe",
            "rowTemplate": f"{base}/{{ID}}",
        },
    }
    row.update(flags)
    return row


class DummyResponse:
    """Just enough of requests.Response for the client."""

    def __init__(self, status_code=200, json_data=None, text=None):
        self.status_code = status_code
        if text is None:
            text = "" if json_data is None else json.dumps(json_data)
        self.text = text


@pytest.fixture
def make_response():
    return DummyResponse


@pytest.fixture
def connected_api():
    """A client holding a token and a populated metadata cache (no network)."""
    cfg = ForceConfig(
        client_id="cid",
        client_secret="secret",
        access_token="token",
        refresh_token="refresh",
        instance_url=INSTANCE,
        api_version=VERSION,
        bulk_poll_interval=0,
    )
    api = ForceAPI(cfg)
    api.metadata.version = VERSION
    api.metadata.resources[VERSION] = dict(RESOURCES)
    api.metadata.sobjects = {
        n: SObjectMetaData.from_dict(sobject_row(n)) for n in ("Account", "Contact")
    }
    api.metadata.sobjects["AccountHistory"] = SObjectMetaData.from_dict(
        sobject_row("AccountHistory", queryable=False)
    )
    return api
