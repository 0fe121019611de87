"""Credential store: OAuth grants against the Salesforce token endpoint.

One ``ForceOAuth`` instance is shared by every call a ``ForceAPI`` makes.
Successful grants mutate the token fields in place, so anything holding the
instance sees a refresh immediately.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, Iterable, Optional

import requests

from .exceptions import (
    ApiError,
    ApiErrorEntry,
    ForceError,
    MalformedResponseError,
    MissingCredentialsError,
    TransportError,
    parse_error_envelope,
)

_logger = logging.getLogger(__name__)

PRODUCTION_LOGIN_URL = "https://login.salesforce.com"
SANDBOX_LOGIN_URL = "https://test.salesforce.com"
TOKEN_PATH = "/services/oauth2/token"

# REST reports INVALID_SESSION_ID, the async (bulk) endpoint InvalidSessionId.
INVALID_SESSION_CODES = frozenset({"INVALID_SESSION_ID", "InvalidSessionId"})

AUTH_FLOWS = ("password", "authorization_code", "client_credentials")

USER_AGENT = "forceapi/1.0"


def is_session_expired(errors: Iterable[ApiErrorEntry]) -> bool:
    """True iff any entry carries the platform's invalid-session code."""
    return any(e.code in INVALID_SESSION_CODES for e in errors)


class ForceOAuth:
    """Holds tokens and client identity; performs authenticate/refresh."""

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        auth_flow: str = "password",
        username: Optional[str] = None,
        password: Optional[str] = None,
        security_token: Optional[str] = None,
        auth_code: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        environment: str = "production",
        login_url: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        instance_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.auth_flow = auth_flow
        self.username = username
        self.password = password
        self.security_token = security_token
        self.auth_code = auth_code
        self.redirect_uri = redirect_uri
        self.environment = environment
        self._login_url = login_url
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.instance_url = instance_url.rstrip("/") if instance_url else None
        self.session = session or requests.Session()
        self.timeout = timeout

        # Extra fields returned by the token endpoint (id, issued_at, ...)
        self.token_info: Dict[str, Any] = {}
        self._lock = threading.Lock()

    # --------------------------- Properties ---------------------------

    @property
    def login_url(self) -> str:
        if self._login_url:
            return self._login_url.rstrip("/")
        if self.environment == "sandbox":
            return SANDBOX_LOGIN_URL
        return PRODUCTION_LOGIN_URL

    @property
    def token_url(self) -> str:
        return f"{self.login_url}{TOKEN_PATH}"

    # --------------------------- Public methods -----------------------

    def validate(self) -> None:
        """Raise unless we hold both an access token and an instance URL."""
        missing = [
            k
            for k, v in {
                "SF_ACCESS_TOKEN": self.access_token,
                "SF_INSTANCE_URL": self.instance_url,
            }.items()
            if not v
        ]
        if missing:
            raise MissingCredentialsError(missing)

    def authenticate(self) -> None:
        """Run the configured grant and store the resulting tokens."""
        if self.auth_flow == "password":
            self._password_login()
        elif self.auth_flow == "authorization_code":
            missing = [
                k
                for k, v in {
                    "SF_AUTH_CODE": self.auth_code,
                    "SF_REDIRECT_URI": self.redirect_uri,
                }.items()
                if not v
            ]
            if missing:
                raise MissingCredentialsError(missing)
            self.authenticate_code(self.auth_code, self.redirect_uri)  # type: ignore[arg-type]
        elif self.auth_flow == "client_credentials":
            self._client_credentials_login()
        else:
            raise ForceError(
                f"Unsupported SF_AUTH_FLOW: {self.auth_flow!r} "
                f"(expected one of: {', '.join(AUTH_FLOWS)})"
            )

    def authenticate_code(self, code: str, redirect_uri: str) -> None:
        """Exchange an authorization code for tokens."""
        self._require_client()
        self._grant(
            {
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            }
        )

    def refresh(self, stale_token: Optional[str] = None) -> None:
        """Mint a new access token.

        Concurrent callers are serialised. A caller that passes the token it
        saw rejected returns without a request if another caller already
        replaced it.
        """
        with self._lock:
            if stale_token is not None and self.access_token and self.access_token != stale_token:
                _logger.debug("Access token already refreshed by another caller.")
                return

            if self.refresh_token:
                _logger.info("Refreshing Salesforce access token.")
                self._require_client()
                self._grant(
                    {
                        "grant_type": "refresh_token",
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": self.refresh_token,
                    }
                )
            elif self.auth_flow in ("password", "client_credentials"):
                _logger.info("No refresh token held; re-authenticating via %s.", self.auth_flow)
                self.authenticate()
            else:
                raise MissingCredentialsError(["SF_REFRESH_TOKEN"])

    # --------------------------- Internal helpers --------------------

    def _require_client(self) -> None:
        missing = [
            k
            for k, v in {
                "SF_CLIENT_ID": self.client_id,
                "SF_CLIENT_SECRET": self.client_secret,
            }.items()
            if not v
        ]
        if missing:
            raise MissingCredentialsError(missing)

    def _password_login(self) -> None:
        missing = [
            k
            for k, v in {
                "SF_CLIENT_ID": self.client_id,
                "SF_CLIENT_SECRET": self.client_secret,
                "SF_USERNAME": self.username,
                "SF_PASSWORD": self.password,
            }.items()
            if not v
        ]
        if missing:
            raise MissingCredentialsError(missing)

        self._grant(
            {
                "grant_type": "password",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "username": self.username,
                "password": f"{self.password}{self.security_token or ''}",
            }
        )

    def _client_credentials_login(self) -> None:
        self._require_client()
        self._grant(
            {
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        )

    def _grant(self, data: Dict[str, Any]) -> None:
        """POST a form-encoded grant and apply the response."""
        _logger.debug("Requesting %s grant from %s", data["grant_type"], self.token_url)
        try:
            r = self.session.request(
                "POST",
                self.token_url,
                data=data,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                    "User-Agent": USER_AGENT,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Error sending authentication request: {e}") from e

        try:
            payload = json.loads(r.text)
        except ValueError as e:
            raise MalformedResponseError(
                f"Unable to decode authentication response (HTTP {r.status_code})", r.text
            ) from e

        errors = parse_error_envelope(payload)
        if errors:
            _logger.error("Authentication failed: %s", errors[0].code)
            raise ApiError(errors, r.status_code)

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise MalformedResponseError("Authentication response has no access_token", r.text)

        self.access_token = payload["access_token"]
        if payload.get("refresh_token"):
            self.refresh_token = payload["refresh_token"]
        if payload.get("instance_url"):
            self.instance_url = payload["instance_url"].rstrip("/")
        self.token_info = {
            k: v for k, v in payload.items() if k not in ("access_token", "refresh_token")
        }
        _logger.debug("Obtained access token for instance %s", self.instance_url)
