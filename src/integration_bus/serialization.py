"""EnvelopeSerializer: JSON roundtrip with EventTypeRegistry hydration."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from .envelope import MessageEnvelope
from .exceptions import MessagingSerializationError

if TYPE_CHECKING:
    from .registry import EventTypeRegistry


def _json_default(obj: Any) -> Any:
    """Serialize datetime, pydantic models, and other non-JSON types."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps_payload(payload: Any) -> str:
    """Serialize a payload on its own (used for dead-letter records)."""
    try:
        return json.dumps(payload, default=_json_default)
    except (TypeError, ValueError) as e:
        raise MessagingSerializationError(str(e)) from e


class EnvelopeSerializer:
    """Serialize/deserialize MessageEnvelope to/from JSON bytes.

    Uses the EventTypeRegistry for type-safe payload hydration.
    """

    def __init__(self, registry: EventTypeRegistry | None = None) -> None:
        """Optionally pass the shared EventTypeRegistry for deserialization."""
        self._registry = registry

    def serialize(self, envelope: MessageEnvelope) -> bytes:
        """Encode envelope to JSON bytes."""
        try:
            data = envelope.model_dump(mode="python")
            return json.dumps(data, default=_json_default).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e

    def deserialize(self, raw: bytes | str) -> MessageEnvelope:
        """Decode JSON bytes to MessageEnvelope (payload left as a dict)."""
        try:
            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            return MessageEnvelope.model_validate(json.loads(text))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            raise MessagingSerializationError(str(e)) from e

    def hydrate(self, envelope: MessageEnvelope) -> MessageEnvelope:
        """Return a copy of *envelope* whose payload is the registered event type.

        Without a registry the envelope is returned unchanged. Unknown types
        raise ``UnknownMessageTypeError``; malformed payloads raise
        ``MessagingSerializationError``. Both are permanent failures.
        """
        if self._registry is None:
            return envelope
        event = self._registry.hydrate(envelope.message_type, envelope.payload)
        return envelope.model_copy(update={"payload": event})

    def decode(self, raw: bytes | str) -> MessageEnvelope:
        """Deserialize and hydrate in one step."""
        return self.hydrate(self.deserialize(raw))
