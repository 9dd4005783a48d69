"""In-memory message bus for tests, delivering in-process through the retry executor."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..bus import BaseMessageBus

if TYPE_CHECKING:
    from ..bus import Subscription
    from ..envelope import MessageEnvelope

logger = logging.getLogger("integration_bus.memory")


class InMemoryMessageBus(BaseMessageBus):
    """Shared bus: publish and send record the envelope and synchronously
    invoke matching subscribers.

    A published envelope reaches every subscription on its topic whose
    message type matches, like a filtered subscription on a real broker.
    A sent envelope reaches the subscription whose name equals the queue.
    """

    transport_name = "memory"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._messages: list[tuple[str, MessageEnvelope]] = []

    async def _send(self, queue: str, envelope: MessageEnvelope, body: bytes) -> None:
        self._messages.append((queue, envelope))
        subscription = self._subscriptions.get(queue)
        if subscription is not None:
            await self._dispatch(subscription, body)

    async def _publish(
        self, topic: str, envelope: MessageEnvelope, body: bytes
    ) -> None:
        self._messages.append((topic, envelope))
        for subscription in list(self._subscriptions.values()):
            if (
                subscription.topic == topic
                and subscription.message_type == envelope.message_type
            ):
                await self._dispatch(subscription, body)

    async def _subscribe(self, subscription: Subscription) -> None:
        return None

    async def requeue(self, queue_name: str, envelope: MessageEnvelope) -> None:
        """Deliver a reprocessed envelope back to its source subscription."""
        logger.debug("Requeue %s to %s", envelope.message_id, queue_name)
        await self._send(queue_name, envelope, self._serializer.serialize(envelope))

    def get_published(self) -> list[tuple[str, MessageEnvelope]]:
        """Return all (destination, envelope) pairs in order."""
        return list(self._messages)

    def assert_published(
        self,
        event_type: type[Any] | str,
        *,
        destination: str | None = None,
        count: int | None = None,
    ) -> list[MessageEnvelope]:
        """Return matching envelopes; raise ``AssertionError`` if none (or
        not exactly *count*) were recorded."""
        name = self._registry.name_of(event_type)
        matches = [
            envelope
            for dest, envelope in self._messages
            if envelope.message_type == name
            and (destination is None or dest == destination)
        ]
        if count is None and not matches:
            raise AssertionError(f"No {name} message was published")
        if count is not None and len(matches) != count:
            raise AssertionError(
                f"Expected {count} {name} message(s), found {len(matches)}"
            )
        return matches

    def clear(self) -> None:
        """Clear recorded messages and subscriptions (for test teardown)."""
        self._messages.clear()
        self._subscriptions.clear()
