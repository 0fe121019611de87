from __future__ import annotations

import logging

try:  # prefer importlib.metadata, fall back on dev installs
    from importlib.metadata import PackageNotFoundError, version
except Exception:  # pragma: no cover
    version = None
    PackageNotFoundError = Exception  # type: ignore[misc]

try:
    __version__ = version("forceapi") if version else "0.0.0"
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

from .api import ForceAPI, ForceConfig  # noqa: E402
from .auth import ForceOAuth  # noqa: E402
from .bulk import BulkBatch, BulkJob, PollPolicy  # noqa: E402
from .exceptions import (  # noqa: E402
    ApiError,
    BulkJobCancelledError,
    BulkJobFailedError,
    BulkJobTimeoutError,
    ForceError,
    MalformedResponseError,
    MissingCredentialsError,
    NotFoundError,
    SessionExpiredError,
    TransportError,
)
from .sobjects import SObject, SObjectResponse  # noqa: E402

# Keep library modules quiet unless the app configures logging:
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "ApiError",
    "BulkBatch",
    "BulkJob",
    "BulkJobCancelledError",
    "BulkJobFailedError",
    "BulkJobTimeoutError",
    "ForceAPI",
    "ForceConfig",
    "ForceError",
    "ForceOAuth",
    "MalformedResponseError",
    "MissingCredentialsError",
    "NotFoundError",
    "PollPolicy",
    "SObject",
    "SObjectResponse",
    "SessionExpiredError",
    "TransportError",
    "__version__",
]
