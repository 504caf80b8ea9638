"""Sorting Compute Engine failures into transient and permanent classes.

The compute_v1 REST transport issues its calls through ``requests`` and
authenticates through ``google.auth``; neither wraps its own failures in
``google.api_core`` exceptions, so all three families are handled here.
"""

from __future__ import annotations

from typing import Literal

import requests  # type: ignore[reportMissingImports]
from google.api_core import exceptions as gexc  # type: ignore[reportMissingImports]
from google.auth import exceptions as auth_exc  # type: ignore[reportMissingImports]

type ErrorClass = Literal["transient", "permanent"]

# Everything a GCE client call can raise that means "the call failed" rather
# than "kitescale has a bug".
CLOUD_CALL_ERRORS = (
    gexc.GoogleAPIError,
    requests.exceptions.RequestException,
    auth_exc.TransportError,
    auth_exc.RefreshError,
    TimeoutError,
    ConnectionError,
)

# Operation error codes GCE reports when capacity or quota is the problem.
_EXHAUSTION_MARKERS = (
    "QUOTA_EXCEEDED",
    "RESOURCE_EXHAUSTED",
    "ZONE_RESOURCE_POOL_EXHAUSTED",
    "ZONE_RESOURCE_POOL_EXHAUSTED_WITH_DETAILS",
    "RESOURCE_POOL_EXHAUSTED",
    "RATE_LIMIT_EXCEEDED",
)


def _mentions_exhaustion(exc: BaseException) -> bool:
    text = str(exc).upper()
    if any(marker in text for marker in _EXHAUSTION_MARKERS):
        return True
    errors = getattr(exc, "errors", None) or ()
    return any(
        marker in str(err).upper()
        for err in errors
        for marker in _EXHAUSTION_MARKERS
    )


def classify_cloud_error(exc: BaseException) -> ErrorClass:
    """Decide whether retrying the failed cloud call can succeed.

    Quota and capacity exhaustion, throttling, server-side errors, timeouts
    and dropped connections are transient, whether they surface from
    google-api-core, from the ``requests`` transport or from credential
    refresh. Other client errors (missing image, invalid machine type,
    denied permission, name conflict) are permanent, as are malformed
    requests and credentials the token endpoint rejected outright.
    """
    match exc:
        case gexc.TooManyRequests() | gexc.ServerError() | gexc.RetryError():
            return "transient"
        case gexc.GoogleAPICallError() if _mentions_exhaustion(exc):
            return "transient"
        case gexc.ClientError():
            return "permanent"
        case gexc.GoogleAPICallError():
            return "transient"
        case (
            requests.exceptions.ConnectionError()
            | requests.exceptions.Timeout()
            | requests.exceptions.ChunkedEncodingError()
            | requests.exceptions.ContentDecodingError()
        ):
            return "transient"
        case requests.exceptions.RequestException():
            return "permanent"
        case auth_exc.TransportError():
            return "transient"
        case auth_exc.RefreshError():
            return "transient" if getattr(exc, "retryable", False) else "permanent"
        case TimeoutError() | ConnectionError():
            return "transient"
        case _ if _mentions_exhaustion(exc):
            return "transient"
        case _:
            return "permanent"
