from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import requests

from .auth import USER_AGENT, ForceOAuth, is_session_expired
from .bulk import BulkMixin, PollPolicy
from .env_loader import load_env_files
from .exceptions import (
    ApiError,
    ApiErrorEntry,
    ForceError,
    MalformedResponseError,
    SessionExpiredError,
    TransportError,
    parse_error_envelope,
)
from .metadata import LIMITS_KEY, QUERY_ALL_KEY, QUERY_KEY, MetadataCache
from .sobjects import SObjectMixin

__author__ = "forceapi contributors"
__copyright__ = "forceapi contributors"
__license__ = "MIT"

_logger = logging.getLogger(__name__)

# Ensure .env is loaded for library use as well (e.g., scripts importing ForceAPI)
load_env_files(quiet=True)

JSON_CONTENT_TYPE = "application/json"
_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ForceError(f"{name} must be a number, got {raw!r}") from None


# ----------------------------------------------------------------------
# Configuration dataclass
# ----------------------------------------------------------------------
@dataclass
class ForceConfig:
    """Configuration for Salesforce API authentication."""

    # password | authorization_code | client_credentials
    auth_flow: str = "password"

    # production | sandbox; ignored when login_url is set
    environment: str = "production"
    login_url: Optional[str] = None

    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    username: Optional[str] = None
    password: Optional[str] = None
    security_token: Optional[str] = None

    auth_code: Optional[str] = None
    redirect_uri: Optional[str] = None

    # Optional: pre-provided tokens / instance URL (e.g. from a previous login)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    instance_url: Optional[str] = None

    # Optional: override API version (e.g. "v60.0"); otherwise auto-discover
    api_version: Optional[str] = None

    timeout: float = 30.0
    bulk_poll_interval: float = 2.0
    bulk_timeout: Optional[float] = None

    @classmethod
    def from_env(cls) -> ForceConfig:
        """Load configuration from environment variables."""
        return cls(
            auth_flow=os.getenv("SF_AUTH_FLOW", "password"),
            environment=os.getenv("SF_ENVIRONMENT", "production"),
            login_url=os.getenv("SF_LOGIN_URL"),
            client_id=os.getenv("SF_CLIENT_ID"),
            client_secret=os.getenv("SF_CLIENT_SECRET"),
            username=os.getenv("SF_USERNAME"),
            password=os.getenv("SF_PASSWORD"),
            security_token=os.getenv("SF_SECURITY_TOKEN"),
            auth_code=os.getenv("SF_AUTH_CODE"),
            redirect_uri=os.getenv("SF_REDIRECT_URI"),
            access_token=os.getenv("SF_ACCESS_TOKEN"),
            refresh_token=os.getenv("SF_REFRESH_TOKEN"),
            instance_url=os.getenv("SF_INSTANCE_URL"),
            api_version=os.getenv("SF_API_VERSION"),
            timeout=_env_float("SF_TIMEOUT", 30.0),
            bulk_poll_interval=_env_float("SF_BULK_POLL_INTERVAL", 2.0),
            bulk_timeout=_env_float("SF_BULK_TIMEOUT", None),
        )

    def poll_policy(self) -> PollPolicy:
        return PollPolicy(interval=self.bulk_poll_interval, timeout=self.bulk_timeout)

    def make_oauth(self, session: Optional[requests.Session] = None) -> ForceOAuth:
        return ForceOAuth(
            client_id=self.client_id,
            client_secret=self.client_secret,
            auth_flow=self.auth_flow,
            username=self.username,
            password=self.password,
            security_token=self.security_token,
            auth_code=self.auth_code,
            redirect_uri=self.redirect_uri,
            environment=self.environment,
            login_url=self.login_url,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            instance_url=self.instance_url,
            session=session,
            timeout=self.timeout,
        )


# ----------------------------------------------------------------------
# Main API client
# ----------------------------------------------------------------------
class ForceAPI(SObjectMixin, BulkMixin):
    """Salesforce REST + Bulk client with transparent session refresh."""

    def __init__(
        self, cfg: Optional[ForceConfig] = None, oauth: Optional[ForceOAuth] = None
    ) -> None:
        self.cfg = cfg or ForceConfig.from_env()
        self.session = requests.Session()
        self.oauth = oauth or self.cfg.make_oauth(self.session)
        self.metadata = MetadataCache(self)
        self.poll_policy = self.cfg.poll_policy()
        self._trace_prefix: Optional[str] = None

    # --------------------------- Public methods -----------------------

    def connect(self) -> None:
        """Authenticate (unless a token was supplied) and run discovery."""
        if self.oauth.access_token and self.oauth.instance_url:
            _logger.debug("Using existing access token from configuration.")
        else:
            _logger.info("Performing OAuth login using auth flow: %s", self.oauth.auth_flow)
            self.oauth.authenticate()

        self.oauth.validate()
        self.metadata.discover(self.cfg.api_version)
        _logger.info(
            "Connected to Salesforce instance=%s api=%s",
            self.instance_url,
            self.api_version,
        )

    @property
    def instance_url(self) -> Optional[str]:
        return self.oauth.instance_url

    @property
    def api_version(self) -> Optional[str]:
        return self.metadata.version

    def get_access_token(self) -> Optional[str]:
        return self.oauth.access_token

    def get_instance_url(self) -> Optional[str]:
        return self.oauth.instance_url

    def trace_on(self, prefix: str = "") -> None:
        """Log full request and response bodies at DEBUG level."""
        self._trace_prefix = prefix

    def trace_off(self) -> None:
        self._trace_prefix = None

    def get_limits(self) -> Dict[str, Any]:
        """Return API usage limits."""
        return self.get(self.metadata.resource_url(LIMITS_KEY))

    def query(self, soql: str) -> Dict[str, Any]:
        """Run a SOQL query (first page only)."""
        return self.get(self.metadata.resource_url(QUERY_KEY), params={"q": soql})

    def query_all(self, soql: str) -> Dict[str, Any]:
        """Run a SOQL query including deleted and archived rows."""
        return self.get(self.metadata.resource_url(QUERY_ALL_KEY), params={"q": soql})

    def query_next(self, next_records_url: str) -> Dict[str, Any]:
        """Fetch the page a previous result pointed at via nextRecordsUrl."""
        return self.get(next_records_url)

    def query_all_iter(self, soql: str, *, include_deleted: bool = False) -> Iterator[dict]:
        """Yield records across pages via nextRecordsUrl."""
        res = self.query_all(soql) if include_deleted else self.query(soql)
        yield from res.get("records", [])
        next_url = res.get("nextRecordsUrl")
        while next_url:
            res = self.query_next(next_url)
            yield from res.get("records", [])
            next_url = res.get("nextRecordsUrl")

    # --------------------------- HTTP verbs ---------------------------

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, payload: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("POST", path, params=params, payload=payload)

    def put(self, path: str, payload: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("PUT", path, params=params, payload=payload)

    def patch(self, path: str, payload: Any = None, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("PATCH", path, params=params, payload=payload)

    def delete(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("DELETE", path, params=params)

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Any = None,
        content_type: str = JSON_CONTENT_TYPE,
        raw: bool = False,
    ) -> Any:
        """Issue a call and return the decoded JSON body (or text if ``raw``).

        An empty body yields ``None``.
        """
        r = self.send(method, path, params=params, payload=payload, content_type=content_type)
        if raw:
            return r.text
        return self._decode(r)

    def send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Any = None,
        content_type: str = JSON_CONTENT_TYPE,
    ) -> requests.Response:
        """Issue a call, refreshing the session and retrying at most once."""
        method = method.upper()
        url = self._resolve_url(path)
        body = self._encode(method, payload)

        token = self.oauth.access_token
        r = self._send_once(method, url, params, body, content_type, token)
        errors = self._error_envelope(r)
        if errors and is_session_expired(errors):
            _logger.info("Session expired on %s %s; refreshing and retrying once.", method, url)
            self.oauth.refresh(stale_token=token)
            r = self._send_once(method, url, params, body, content_type, self.oauth.access_token)
            errors = self._error_envelope(r)
            if errors and is_session_expired(errors):
                raise SessionExpiredError(errors, r.status_code)

        if errors:
            _logger.error("API error %s on %s %s: %s", r.status_code, method, url, errors[0].code)
            raise ApiError(errors, r.status_code)
        if r.status_code >= 400:
            _logger.error("HTTP %s error for %s: %s", r.status_code, url, r.text[:500])
            raise ApiError([ApiErrorEntry(f"HTTP_{r.status_code}", r.text)], r.status_code)
        return r

    # --------------------------- Internal helpers --------------------

    def _resolve_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not self.instance_url:
            raise TransportError("Not connected: no instance URL (call connect() first)")
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.instance_url}{path}"

    @staticmethod
    def _encode(method: str, payload: Any) -> Optional[str]:
        if payload is None or method not in _BODY_METHODS:
            return None
        if isinstance(payload, str):
            return payload
        return json.dumps(payload)

    def _headers(self, url: str, content_type: str, token: Optional[str]) -> Dict[str, str]:
        headers = {
            "Content-Type": content_type,
            "Accept": JSON_CONTENT_TYPE,
            "User-Agent": USER_AGENT,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
            if "/services/async/" in url:
                headers["X-SFDC-Session"] = token
        return headers

    def _send_once(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        body: Optional[str],
        content_type: str,
        token: Optional[str],
    ) -> requests.Response:
        if self._trace_prefix is not None:
            _logger.debug(
                "%s request: %s %s params=%s body=%s", self._trace_prefix, method, url, params, body
            )
        try:
            r = self.session.request(
                method,
                url,
                params=params,
                data=body.encode("utf-8") if body is not None else None,
                headers=self._headers(url, content_type, token),
                timeout=self.cfg.timeout,
            )
        except requests.RequestException as e:
            _logger.warning("Request error for %s %s: %s", method, url, e)
            raise TransportError(f"{method} {url} failed: {e}") from e
        if self._trace_prefix is not None:
            _logger.debug("%s response: %s %s", self._trace_prefix, r.status_code, r.text)
        return r

    @staticmethod
    def _error_envelope(r: requests.Response) -> Optional[list]:
        """Envelope entries if the body is an error envelope, regardless of status."""
        text = r.text
        if not text or not text.strip():
            return None
        try:
            body = json.loads(text)
        except ValueError:
            return None
        return parse_error_envelope(body)

    @staticmethod
    def _decode(r: requests.Response) -> Any:
        text = r.text
        if not text or not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError as e:
            raise MalformedResponseError(
                f"Response is not valid JSON (HTTP {r.status_code})", text
            ) from e
