"""RabbitMQMessageBus: topic exchange per topic, routing key per message type."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aio_pika

from ..bus import BaseMessageBus, default_queue_name

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractIncomingMessage

    from ..bus import Subscription
    from ..envelope import MessageEnvelope
    from .connection import RabbitMQConnectionManager

logger = logging.getLogger("integration_bus.rabbitmq")


def build_message(
    envelope: MessageEnvelope,
    body: bytes,
    *,
    persistent: bool = True,
) -> aio_pika.Message:
    """AMQP message carrying a serialized envelope."""
    return aio_pika.Message(
        body=body,
        content_type="application/json",
        delivery_mode=(
            aio_pika.DeliveryMode.PERSISTENT
            if persistent
            else aio_pika.DeliveryMode.NOT_PERSISTENT
        ),
        message_id=envelope.message_id,
        correlation_id=envelope.correlation_id,
        type=envelope.message_type,
        timestamp=envelope.timestamp,
        headers={
            "message_type": envelope.message_type,
            "attempt_count": envelope.attempt_count,
            **envelope.headers,
        },
    )


class RabbitMQMessageBus(BaseMessageBus):
    """RabbitMQ adapter implementing IMessageBus.

    Publish goes to a durable topic exchange named after the topic, with the
    message type as routing key; each subscription binds its own durable
    queue with its message type, so the binding is the type filter. Send
    goes through the default exchange straight to the named queue.
    """

    transport_name = "rabbitmq"

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        *,
        domain_queues: dict[str, str] | None = None,
        prefetch_count: int | None = None,
        persistent: bool = True,
        **kwargs: Any,
    ) -> None:
        """Configure the bus.

        Args:
            connection: Shared connection manager.
            domain_queues: Module name → queue for point-to-point sends.
            prefetch_count: QoS prefetch; defaults to ``max_concurrent_calls``.
            persistent: Publish with persistent delivery mode.
            **kwargs: Passed to ``BaseMessageBus``.
        """
        super().__init__(**kwargs)
        self._connection = connection
        self._domain_queues = {k.lower(): v for k, v in (domain_queues or {}).items()}
        self._prefetch_count = prefetch_count or self._max_concurrent_calls
        self._persistent = persistent
        self._declared_queues: set[str] = set()
        self._consumer_tags: list[tuple[Any, str]] = []

    async def connect(self) -> None:
        await self._connection.connect()

    def queue_name_for(self, message_type: str) -> str:
        registration = self._registry.registration_for(message_type)
        return self._domain_queues.get(
            registration.module, default_queue_name(registration.name)
        )

    async def _declare_exchange(
        self, channel: AbstractChannel, topic: str
    ) -> AbstractExchange:
        return await channel.declare_exchange(
            topic,
            aio_pika.ExchangeType.TOPIC,
            durable=True,
        )

    async def _send(self, queue: str, envelope: MessageEnvelope, body: bytes) -> None:
        await self._connection.connect()
        async with self._connection.acquire_channel() as channel:
            if queue not in self._declared_queues:
                await channel.declare_queue(queue, durable=True)
                self._declared_queues.add(queue)
            await channel.default_exchange.publish(
                build_message(envelope, body, persistent=self._persistent),
                routing_key=queue,
            )

    async def _publish(
        self, topic: str, envelope: MessageEnvelope, body: bytes
    ) -> None:
        await self._connection.connect()
        async with self._connection.acquire_channel() as channel:
            exchange = await self._declare_exchange(channel, topic)
            await exchange.publish(
                build_message(envelope, body, persistent=self._persistent),
                routing_key=envelope.message_type,
            )

    async def _subscribe(self, subscription: Subscription) -> None:
        await self._connection.connect()
        channel = await self._connection.consumer_channel(self._prefetch_count)
        exchange = await self._declare_exchange(channel, subscription.topic)
        queue = await channel.declare_queue(subscription.name, durable=True)
        await queue.bind(exchange, routing_key=subscription.message_type)
        self._declared_queues.add(subscription.name)

        async def on_message(raw: AbstractIncomingMessage) -> None:
            # Acked once the handler succeeded or the message was
            # dead-lettered; a failed dead-letter write requeues it.
            async with raw.process(requeue=True, ignore_processed=True):
                await self._dispatch(subscription, raw.body)

        tag = await queue.consume(on_message)
        self._consumer_tags.append((queue, tag))

    async def close(self) -> None:
        for queue, tag in self._consumer_tags:
            try:
                await queue.cancel(tag)
            except Exception as e:  # noqa: BLE001
                logger.warning("Failed to cancel consumer %s: %s", tag, e)
        self._consumer_tags.clear()
        await super().close()
        await self._connection.close()

    async def health_check(self) -> bool:
        return await self._connection.health_check()
