"""Failure classification for botocore errors."""

from __future__ import annotations

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    NoRegionError,
    ParamValidationError,
    ReadTimeoutError,
)

from ..classification import FailureKind

_TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestThrottled",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
        "RequestTimeout",
        "KMSThrottlingException",
    }
)


def classify_aws_error(exc: BaseException) -> FailureKind | None:
    """Throttling, 5xx and connection problems are transient; other client
    errors and local misconfiguration are permanent."""
    if isinstance(
        exc,
        (
            EndpointConnectionError,
            ConnectTimeoutError,
            ReadTimeoutError,
            ConnectionClosedError,
        ),
    ):
        return FailureKind.TRANSIENT
    if isinstance(exc, (NoCredentialsError, NoRegionError, ParamValidationError)):
        return FailureKind.PERMANENT
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        if error.get("Code") in _TRANSIENT_CODES or status >= 500:
            return FailureKind.TRANSIENT
        return FailureKind.PERMANENT
    return None
