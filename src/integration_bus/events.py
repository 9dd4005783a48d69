"""IntegrationEvent base class and routing decorators."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class IntegrationEvent(BaseModel):
    """Base class for events published across module boundaries.

    Integration events are immutable. Each module derives them from its own
    domain events and hands them to the message bus after committing state.
    Event types must be registered with an ``EventTypeRegistry`` before they
    can be published or subscribed to.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = ""
    correlation_id: str | None = None

    @property
    def event_type(self) -> str:
        """Registry key of this event (the class name)."""
        return type(self).__name__


def dedicated_topic(topic: str) -> object:
    """Decorator giving an event class its own topic under the hybrid strategy.

    Usage::

        @dedicated_topic("provider-verification")
        class ProviderVerificationStatusUpdated(IntegrationEvent):
            ...
    """
    if not topic:
        raise ValueError("topic must be a non-empty string")

    def decorator(cls: T) -> T:
        cls.__topic_hint__ = topic  # type: ignore[attr-defined]
        return cls

    return decorator


def critical_event(cls: T) -> T:
    """Mark an event class as critical (candidate for a dedicated topic)."""
    cls.__critical__ = True  # type: ignore[attr-defined]
    return cls
