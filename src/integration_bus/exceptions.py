"""Exception hierarchy for integration-bus."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .classification import FailureKind


class IntegrationBusError(Exception):
    """Root exception for the integration bus."""


class ConfigurationError(IntegrationBusError):
    """Raised at startup when messaging cannot be wired.

    Missing connection settings, an unresolvable topic for a registered
    event type, or registration after the registry was frozen. Never retried.
    """


class MessagingError(IntegrationBusError):
    """Base class for all messaging-related infrastructure errors."""


class TransportError(MessagingError):
    """Raised when the underlying transport fails to deliver a message.

    ``failure_kind`` carries the classifier verdict when known.
    """

    def __init__(
        self,
        message: str,
        *,
        failure_kind: FailureKind | None = None,
        destination: str | None = None,
    ) -> None:
        self.failure_kind = failure_kind
        self.destination = destination
        super().__init__(message)


class MessagingConnectionError(TransportError):
    """Raised when connectivity to the message broker fails."""

    transient = True


class MessagingSerializationError(MessagingError):
    """Raised when message serialization or deserialization fails."""

    transient = False


class UnknownMessageTypeError(MessagingError):
    """Raised when a message type is not present in the event type registry."""

    transient = False

    def __init__(self, message_type: str) -> None:
        self.message_type = message_type
        super().__init__(f"Unknown message type: {message_type!r}")


class HandlerError(MessagingError):
    """Wraps an exception raised by a subscriber's business logic."""

    def __init__(self, message: str, handler_type: str | None = None) -> None:
        self.handler_type = handler_type
        super().__init__(message)


class DeadLetterOperationError(IntegrationBusError):
    """Raised when a dead-letter operation (send, list, reprocess, purge) fails."""

    def __init__(
        self,
        message: str,
        *,
        queue_name: str | None = None,
        message_id: str | None = None,
    ) -> None:
        self.queue_name = queue_name
        self.message_id = message_id
        super().__init__(message)
