"""Tests for forceapi.auth (credential store)."""

import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from forceapi.auth import ForceOAuth, is_session_expired
from forceapi.exceptions import (
    ApiError,
    ApiErrorEntry,
    ForceError,
    MalformedResponseError,
    MissingCredentialsError,
    TransportError,
)

INSTANCE = "https://myorg.my.salesforce.com"


class DummyResponse:
    def __init__(self, *, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


def token_response(access="NEW_TOKEN", refresh=None, instance=INSTANCE):
    body = f'{{"access_token": "{access}", "instance_url": "{instance}", "id": "x"'
    if refresh:
        body += f', "refresh_token": "{refresh}"'
    return DummyResponse(text=body + "}")


def make_oauth(**kwargs):
    defaults = dict(
        client_id="cid",
        client_secret="secret",
        username="user@example.com",
        password="pw",
        security_token="TOKEN",
        session=MagicMock(),
    )
    defaults.update(kwargs)
    return ForceOAuth(**defaults)


# ---- authenticate -------------------------------------------------------------


def test_password_grant_posts_form_and_stores_tokens():
    oauth = make_oauth()
    oauth.session.request.return_value = token_response(refresh="REFRESH")

    oauth.authenticate()

    method, url = oauth.session.request.call_args.args
    kwargs = oauth.session.request.call_args.kwargs
    assert method == "POST"
    assert url == "https://login.salesforce.com/services/oauth2/token"
    assert kwargs["data"]["grant_type"] == "password"
    assert kwargs["data"]["password"] == "pwTOKEN"
    assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"

    assert oauth.access_token == "NEW_TOKEN"
    assert oauth.refresh_token == "REFRESH"
    assert oauth.instance_url == INSTANCE
    assert oauth.token_info["id"] == "x"
    assert "access_token" not in oauth.token_info


def test_sandbox_environment_uses_test_login():
    oauth = make_oauth(environment="sandbox")
    assert oauth.token_url == "https://test.salesforce.com/services/oauth2/token"


def test_explicit_login_url_wins():
    oauth = make_oauth(environment="sandbox", login_url="https://acme.my.salesforce.com/")
    assert oauth.token_url == "https://acme.my.salesforce.com/services/oauth2/token"


def test_authorization_code_grant():
    oauth = make_oauth(auth_flow="authorization_code", auth_code="CODE", redirect_uri="https://cb")
    oauth.session.request.return_value = token_response(refresh="REFRESH")

    oauth.authenticate()

    data = oauth.session.request.call_args.kwargs["data"]
    assert data["grant_type"] == "authorization_code"
    assert data["code"] == "CODE"
    assert data["redirect_uri"] == "https://cb"
    assert oauth.refresh_token == "REFRESH"


def test_authorization_code_requires_code():
    oauth = make_oauth(auth_flow="authorization_code")

    with pytest.raises(MissingCredentialsError) as exc_info:
        oauth.authenticate()

    assert exc_info.value.missing == ["SF_AUTH_CODE", "SF_REDIRECT_URI"]


def test_client_credentials_grant():
    oauth = make_oauth(auth_flow="client_credentials")
    oauth.session.request.return_value = token_response()

    oauth.authenticate()

    assert oauth.session.request.call_args.kwargs["data"]["grant_type"] == "client_credentials"


def test_missing_password_credentials():
    oauth = make_oauth(client_secret=None, password=None)

    with pytest.raises(MissingCredentialsError) as exc_info:
        oauth.authenticate()

    assert "SF_CLIENT_SECRET" in str(exc_info.value)
    assert "SF_PASSWORD" in str(exc_info.value)
    oauth.session.request.assert_not_called()


def test_unsupported_flow():
    with pytest.raises(ForceError, match="Unsupported SF_AUTH_FLOW"):
        make_oauth(auth_flow="saml").authenticate()


def test_error_envelope_becomes_api_error():
    oauth = make_oauth()
    oauth.session.request.return_value = DummyResponse(
        status_code=400,
        text='{"error": "invalid_grant", "error_description": "authentication failure"}',
    )

    with pytest.raises(ApiError) as exc_info:
        oauth.authenticate()

    assert exc_info.value.error_code == "invalid_grant"
    assert exc_info.value.status_code == 400
    assert oauth.access_token is None


def test_non_json_response_is_malformed():
    oauth = make_oauth()
    oauth.session.request.return_value = DummyResponse(status_code=502, text="<html>")

    with pytest.raises(MalformedResponseError):
        oauth.authenticate()


def test_response_without_token_is_malformed():
    oauth = make_oauth()
    oauth.session.request.return_value = DummyResponse(text='{"instance_url": "x"}')

    with pytest.raises(MalformedResponseError):
        oauth.authenticate()


def test_transport_failure():
    oauth = make_oauth()
    oauth.session.request.side_effect = requests.Timeout("slow")

    with pytest.raises(TransportError):
        oauth.authenticate()


# ---- refresh ----------------------------------------------------------------


def test_refresh_uses_refresh_token_without_password():
    oauth = make_oauth(password=None, access_token="OLD", refresh_token="REFRESH")
    oauth.session.request.return_value = token_response()

    oauth.refresh()

    data = oauth.session.request.call_args.kwargs["data"]
    assert data == {
        "grant_type": "refresh_token",
        "client_id": "cid",
        "client_secret": "secret",
        "refresh_token": "REFRESH",
    }
    assert oauth.access_token == "NEW_TOKEN"
    # Refresh responses do not repeat the refresh token; keep the old one.
    assert oauth.refresh_token == "REFRESH"


def test_refresh_without_refresh_token_reauthenticates_password_grant():
    oauth = make_oauth(access_token="OLD")
    oauth.session.request.return_value = token_response()

    oauth.refresh()

    assert oauth.session.request.call_args.kwargs["data"]["grant_type"] == "password"
    assert oauth.access_token == "NEW_TOKEN"


def test_refresh_code_grant_needs_refresh_token():
    oauth = make_oauth(auth_flow="authorization_code", access_token="OLD")

    with pytest.raises(MissingCredentialsError, match="SF_REFRESH_TOKEN"):
        oauth.refresh()


def test_refresh_skipped_when_token_already_replaced():
    oauth = make_oauth(access_token="NEWER", refresh_token="REFRESH")

    oauth.refresh(stale_token="OLD")

    oauth.session.request.assert_not_called()
    assert oauth.access_token == "NEWER"


def test_concurrent_refreshes_collapse_into_one():
    oauth = make_oauth(access_token="OLD", refresh_token="REFRESH")

    def slow_grant(*args, **kwargs):
        time.sleep(0.05)
        return token_response()

    oauth.session.request.side_effect = slow_grant

    threads = [
        threading.Thread(target=oauth.refresh, kwargs={"stale_token": "OLD"}) for _ in range(5)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert oauth.session.request.call_count == 1
    assert oauth.access_token == "NEW_TOKEN"


# ---- predicates ---------------------------------------------------------------


def test_is_session_expired():
    assert is_session_expired([ApiErrorEntry("INVALID_SESSION_ID", "Session expired")])
    assert is_session_expired([ApiErrorEntry("OTHER"), ApiErrorEntry("InvalidSessionId")])
    assert not is_session_expired([ApiErrorEntry("INVALID_FIELD")])
    assert not is_session_expired([])


def test_validate():
    make_oauth(access_token="t", instance_url=INSTANCE).validate()

    with pytest.raises(MissingCredentialsError) as exc_info:
        make_oauth(access_token="t").validate()

    assert exc_info.value.missing == ["SF_INSTANCE_URL"]
