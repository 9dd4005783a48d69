"""BaseMessageBus: transport-independent half of every message bus."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .classification import FailureClassifier
from .dead_letter.middleware import MessageRetryExecutor, handler_type_of
from .envelope import MessageEnvelope
from .exceptions import (
    ConfigurationError,
    MessagingSerializationError,
    TransportError,
    UnknownMessageTypeError,
)
from .serialization import EnvelopeSerializer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .dead_letter.middleware import RetryHook
    from .ports import IDeadLetterService, MessageHandler
    from .registry import EventTypeRegistry
    from .topics import TopicStrategySelector

logger = logging.getLogger("integration_bus.bus")

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def snake_case(name: str) -> str:
    """``DocumentVerified`` -> ``document_verified``."""
    return _CAMEL_BOUNDARY.sub("_", name).replace("-", "_").lower()


def default_queue_name(message_type: str) -> str:
    return snake_case(message_type)


def default_subscription_name(service_name: str, message_type: str) -> str:
    return f"{service_name}.{snake_case(message_type)}"


@dataclass
class Subscription:
    """A handler bound to one event type, consuming from one queue."""

    name: str
    message_type: str
    topic: str
    handler: MessageHandler
    handler_type: str
    executor: MessageRetryExecutor
    semaphore: asyncio.Semaphore
    tasks: list[asyncio.Task[None]] = field(default_factory=list)


class BaseMessageBus:
    """Envelope wrapping, routing, error wrapping, and handler dispatch.

    Subclasses implement ``_send``, ``_publish`` and ``_subscribe`` for their
    transport and feed received bodies to ``_dispatch``.
    """

    transport_name = "base"

    def __init__(
        self,
        *,
        registry: EventTypeRegistry,
        selector: TopicStrategySelector,
        dead_letter: IDeadLetterService,
        serializer: EnvelopeSerializer | None = None,
        classifier: FailureClassifier | None = None,
        service_name: str = "app",
        max_concurrent_calls: int = 1,
    ) -> None:
        if max_concurrent_calls < 1:
            raise ValueError("max_concurrent_calls must be >= 1")
        self._registry = registry
        self._selector = selector
        self._dead_letter = dead_letter
        self._serializer = serializer or EnvelopeSerializer(registry)
        self._classifier = classifier or FailureClassifier()
        self._service_name = service_name
        self._max_concurrent_calls = max_concurrent_calls
        self._subscriptions: dict[str, Subscription] = {}

    @property
    def dead_letter(self) -> IDeadLetterService:
        return self._dead_letter

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    async def connect(self) -> None:
        """Open transport resources; called once by the factory."""
        return None

    def queue_name_for(self, message_type: str) -> str:
        return default_queue_name(message_type)

    def envelope_for(self, message: Any, **kwargs: Any) -> MessageEnvelope:
        """Wrap *message*, rejecting types the registry does not know.

        Raises ``ConfigurationError`` for unregistered event classes and for
        envelopes or dicts whose ``message_type`` is not registered.
        """
        if isinstance(message, (MessageEnvelope, dict)):
            envelope = MessageEnvelope.wrap(message, **kwargs)
            if not self._registry.has(envelope.message_type):
                raise ConfigurationError(
                    f"Cannot send unregistered message type {envelope.message_type!r}"
                )
            return envelope
        try:
            registration = self._registry.registration_for(message)
        except UnknownMessageTypeError as e:
            raise ConfigurationError(
                f"Cannot send unregistered message type {e.message_type!r}"
            ) from e
        return MessageEnvelope.wrap(message, message_type=registration.name, **kwargs)

    async def send(
        self,
        message: Any,
        destination_queue: str | None = None,
        **kwargs: Any,
    ) -> None:
        envelope = self.envelope_for(message, **kwargs)
        queue = destination_queue or self.queue_name_for(envelope.message_type)
        body = self._serializer.serialize(envelope)
        logger.debug(
            "Sending %s %s to queue %s via %s",
            envelope.message_type,
            envelope.message_id,
            queue,
            self.transport_name,
        )
        await self._guarded(
            "send", queue, envelope, lambda: self._send(queue, envelope, body)
        )

    async def publish(
        self,
        event: Any,
        topic_override: str | None = None,
        **kwargs: Any,
    ) -> None:
        envelope = self.envelope_for(event, **kwargs)
        topic = topic_override or self._selector.select_topic_for_event(
            envelope.message_type
        )
        body = self._serializer.serialize(envelope)
        logger.debug(
            "Publishing %s %s to topic %s via %s",
            envelope.message_type,
            envelope.message_id,
            topic,
            self.transport_name,
        )
        await self._guarded(
            "publish", topic, envelope, lambda: self._publish(topic, envelope, body)
        )

    async def subscribe(
        self,
        event_type: type[Any],
        handler: MessageHandler,
        subscription_name: str | None = None,
    ) -> None:
        topic = self._selector.select_topic_for_event(event_type)
        message_type = self._registry.registration_for(event_type).name
        name = subscription_name or default_subscription_name(
            self._service_name, message_type
        )
        if name in self._subscriptions:
            raise ConfigurationError(f"Subscription {name!r} is already registered")
        handler_type = handler_type_of(handler)
        subscription = Subscription(
            name=name,
            message_type=message_type,
            topic=topic,
            handler=handler,
            handler_type=handler_type,
            executor=MessageRetryExecutor(
                self._dead_letter, handler_type=handler_type, source_queue=name
            ),
            semaphore=asyncio.Semaphore(self._max_concurrent_calls),
        )
        await self._subscribe(subscription)
        self._subscriptions[name] = subscription
        logger.info(
            "Subscribed %s to %s on topic %s (subscription %s)",
            handler_type,
            message_type,
            topic,
            name,
        )

    async def _guarded(
        self,
        operation: str,
        destination: str,
        envelope: MessageEnvelope,
        call: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            await call()
        except TransportError as e:
            logger.error(
                "Failed to %s %s to %s: %s",
                operation,
                envelope.message_type,
                destination,
                e,
            )
            raise
        except Exception as e:
            kind = self._classifier.classify(e)
            logger.error(
                "Failed to %s %s to %s (%s): %s",
                operation,
                envelope.message_type,
                destination,
                kind.value,
                e,
            )
            raise TransportError(
                f"Failed to {operation} {envelope.message_type} to {destination}: {e}",
                failure_kind=kind,
                destination=destination,
            ) from e

    async def _dispatch(
        self,
        subscription: Subscription,
        raw: bytes | str | MessageEnvelope,
        *,
        before_retry: RetryHook | None = None,
    ) -> bool:
        """Decode *raw* and run the subscription's handler with retries.

        Returns False when the message ended in the dead-letter store.
        Undecodable messages and unknown types are dead-lettered at once.
        """
        async with subscription.semaphore:
            envelope: MessageEnvelope | None = (
                raw if isinstance(raw, MessageEnvelope) else None
            )
            try:
                if envelope is None:
                    envelope = self._serializer.deserialize(
                        raw  # type: ignore[arg-type]
                    )
                envelope = self._serializer.hydrate(envelope)
            except (MessagingSerializationError, UnknownMessageTypeError) as e:
                logger.error(
                    "Cannot decode message for subscription %s: %s",
                    subscription.name,
                    e,
                )
                await self._dead_letter.send_to_dead_letter(
                    envelope or _undecodable(raw),
                    e,
                    subscription.handler_type,
                    subscription.name,
                    envelope.attempt_count if envelope else 1,
                )
                return False
            return await subscription.executor.execute(
                envelope, subscription.handler, before_retry=before_retry
            )

    async def _send(self, queue: str, envelope: MessageEnvelope, body: bytes) -> None:
        raise NotImplementedError

    async def _publish(
        self, topic: str, envelope: MessageEnvelope, body: bytes
    ) -> None:
        raise NotImplementedError

    async def _subscribe(self, subscription: Subscription) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        for subscription in self._subscriptions.values():
            for task in subscription.tasks:
                task.cancel()
            if subscription.tasks:
                await asyncio.gather(*subscription.tasks, return_exceptions=True)
            subscription.tasks.clear()

    async def health_check(self) -> bool:
        return True


def _undecodable(raw: bytes | str | MessageEnvelope) -> MessageEnvelope:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    return MessageEnvelope(message_type="unknown", payload=text)
