"""Failure taxonomy: map an exception to Transient or Permanent."""

from __future__ import annotations

import asyncio
import enum
from typing import TYPE_CHECKING

from pydantic import ValidationError

from .exceptions import (
    HandlerError,
    MessagingSerializationError,
    TransportError,
    UnknownMessageTypeError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    ClassificationRule = Callable[[BaseException], "FailureKind | None"]


class FailureKind(enum.Enum):
    """Closed failure taxonomy used to gate retries."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)

_PERMANENT_TYPES: tuple[type[BaseException], ...] = (
    MessagingSerializationError,
    UnknownMessageTypeError,
    ValidationError,
    ValueError,
    TypeError,
    LookupError,
    NotImplementedError,
)


def classify_failure(exc: BaseException) -> FailureKind:
    """Classify *exc* with the transport-agnostic default rules.

    Exceptions may declare ``transient = True/False`` to opt in explicitly.
    Anything unrecognised is transient; retries stay bounded by the policy.
    """
    if isinstance(exc, TransportError) and exc.failure_kind is not None:
        return exc.failure_kind
    marker = getattr(exc, "transient", None)
    if marker is True:
        return FailureKind.TRANSIENT
    if marker is False:
        return FailureKind.PERMANENT
    if isinstance(exc, _TRANSIENT_TYPES):
        return FailureKind.TRANSIENT
    if isinstance(exc, _PERMANENT_TYPES):
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT


class FailureClassifier:
    """Chain of transport-specific rules with the default rules as fallback.

    Each rule returns a ``FailureKind`` or ``None`` to defer to the next one.
    ``HandlerError`` and transport failures go through the same chain.
    """

    def __init__(self, *rules: ClassificationRule) -> None:
        self._rules = rules

    def classify(self, exc: BaseException) -> FailureKind:
        """Return the failure kind for *exc*."""
        if isinstance(exc, asyncio.CancelledError):
            raise TypeError("Cancellation is not a delivery failure")
        for rule in self._rules:
            kind = rule(exc)
            if kind is not None:
                return kind
        # Wrappers without their own verdict are judged by what they wrap.
        cause = exc.__cause__
        if cause is not None and _is_unmarked_wrapper(exc):
            return self.classify(cause)
        return classify_failure(exc)

    def with_rules(self, *rules: ClassificationRule) -> FailureClassifier:
        """Return a classifier that tries *rules* before the current ones."""
        return FailureClassifier(*rules, *self._rules)

    __call__ = classify


def _is_unmarked_wrapper(exc: BaseException) -> bool:
    if not isinstance(exc, (TransportError, HandlerError)):
        return False
    if isinstance(exc, TransportError) and exc.failure_kind is not None:
        return False
    return getattr(exc, "transient", None) is None
