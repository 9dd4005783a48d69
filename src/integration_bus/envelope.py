"""MessageEnvelope: standard immutable wrapper for transport."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MessageEnvelope(BaseModel):
    """Immutable wrapper for messages over the wire.

    Carries payload, tracing IDs, and retry metadata. Handlers receive the
    envelope, so ``attempt_count`` is visible to business code.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    message_type: str = Field(..., description="Registry key, e.g. 'OrderPlaced'")
    payload: Any = None
    attempt_count: int = Field(default=1, ge=1, description="Delivery attempt count")
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    causation_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    headers: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def wrap(
        cls,
        message: Any,
        *,
        message_type: str | None = None,
        **kwargs: Any,
    ) -> MessageEnvelope:
        """Build an envelope from an event, dict, or existing envelope."""
        if isinstance(message, MessageEnvelope):
            return message
        if message_type is None:
            if isinstance(message, dict):
                message_type = str(
                    message.get("event_type") or kwargs.get("event_type") or "unknown"
                )
            elif hasattr(message, "model_dump"):
                message_type = getattr(message, "event_type", type(message).__name__)
            else:
                message_type = str(kwargs.get("event_type") or type(message).__name__)
        correlation_id = kwargs.get("correlation_id") or getattr(
            message, "correlation_id", None
        )
        fields: dict[str, Any] = {
            "message_type": message_type,
            "payload": message,
            "causation_id": kwargs.get("causation_id"),
            "headers": dict(kwargs.get("headers") or {}),
        }
        if correlation_id:
            fields["correlation_id"] = str(correlation_id)
        return cls(**fields)

    def next_attempt(self) -> MessageEnvelope:
        """Return a copy for the next delivery attempt."""
        return self.model_copy(update={"attempt_count": self.attempt_count + 1})

    def reset_attempts(self) -> MessageEnvelope:
        """Return a fresh copy with the attempt counter back at 1."""
        return self.model_copy(
            update={"attempt_count": 1, "message_id": str(uuid.uuid4())}
        )
