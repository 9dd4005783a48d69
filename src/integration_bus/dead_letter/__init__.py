"""Dead-letter services, records, and the retry executor."""

from __future__ import annotations

from integration_bus.dead_letter.base import BaseDeadLetterService
from integration_bus.dead_letter.memory import InMemoryDeadLetterService
from integration_bus.dead_letter.middleware import MessageRetryExecutor, handler_type_of
from integration_bus.dead_letter.models import (
    DeadLetterStatistics,
    EnvironmentMetadata,
    FailedMessageInfo,
    FailureAttempt,
)
from integration_bus.dead_letter.noop import NoOpDeadLetterService

__all__ = [
    "BaseDeadLetterService",
    "DeadLetterStatistics",
    "EnvironmentMetadata",
    "FailedMessageInfo",
    "FailureAttempt",
    "InMemoryDeadLetterService",
    "MessageRetryExecutor",
    "NoOpDeadLetterService",
    "handler_type_of",
]
