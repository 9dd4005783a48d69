"""Cross-module integration event bus with retry and dead-letter handling."""

from __future__ import annotations

from .bus import BaseMessageBus
from .classification import FailureClassifier, FailureKind, classify_failure
from .config import MessagingSettings
from .dead_letter import (
    DeadLetterStatistics,
    FailedMessageInfo,
    InMemoryDeadLetterService,
    MessageRetryExecutor,
    NoOpDeadLetterService,
)
from .envelope import MessageEnvelope
from .events import IntegrationEvent, critical_event, dedicated_topic
from .exceptions import (
    ConfigurationError,
    DeadLetterOperationError,
    HandlerError,
    IntegrationBusError,
    MessagingConnectionError,
    MessagingError,
    MessagingSerializationError,
    TransportError,
    UnknownMessageTypeError,
)
from .factory import (
    DeadLetterServiceFactory,
    MessageBusFactory,
    Messaging,
    TransportKind,
    create_messaging,
    select_dead_letter_transport,
    select_transport,
)
from .memory import InMemoryMessageBus
from .noop import NoOpMessageBus
from .ports import IDeadLetterService, IMessageBus
from .registry import EventTypeRegistration, EventTypeRegistry
from .retry import RetryPolicy
from .serialization import EnvelopeSerializer
from .topics import TopicStrategy, TopicStrategySelector

__all__ = [
    "BaseMessageBus",
    "ConfigurationError",
    "DeadLetterOperationError",
    "DeadLetterServiceFactory",
    "DeadLetterStatistics",
    "EnvelopeSerializer",
    "EventTypeRegistration",
    "EventTypeRegistry",
    "FailedMessageInfo",
    "FailureClassifier",
    "FailureKind",
    "HandlerError",
    "IDeadLetterService",
    "IMessageBus",
    "InMemoryDeadLetterService",
    "InMemoryMessageBus",
    "IntegrationBusError",
    "IntegrationEvent",
    "MessageBusFactory",
    "MessageEnvelope",
    "MessageRetryExecutor",
    "Messaging",
    "MessagingConnectionError",
    "MessagingError",
    "MessagingSerializationError",
    "MessagingSettings",
    "NoOpDeadLetterService",
    "NoOpMessageBus",
    "RetryPolicy",
    "TopicStrategy",
    "TopicStrategySelector",
    "TransportError",
    "TransportKind",
    "UnknownMessageTypeError",
    "classify_failure",
    "create_messaging",
    "critical_event",
    "dedicated_topic",
    "select_dead_letter_transport",
    "select_transport",
]
