"""RabbitMQDeadLetterService: DLX exchange with one durable queue per source."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aio_pika

from ..dead_letter.base import BaseDeadLetterService
from ..dead_letter.models import DeadLetterStatistics, FailedMessageInfo
from ..exceptions import MessagingSerializationError
from ..serialization import EnvelopeSerializer
from .bus import build_message

if TYPE_CHECKING:
    from collections.abc import Iterable

    from aio_pika.abc import (
        AbstractChannel,
        AbstractExchange,
        AbstractIncomingMessage,
        AbstractQueue,
    )

    from .connection import RabbitMQConnectionManager

logger = logging.getLogger("integration_bus.rabbitmq.dead_letter")


class RabbitMQDeadLetterService(BaseDeadLetterService):
    """Dead-letter store on RabbitMQ.

    Records are published to the ``dlx`` topic exchange with the dead-letter
    queue name (``dlq.<source>``) as routing key. Listing and lookups fetch
    with ``basic_get`` and reject with requeue, leaving the queue unchanged.
    """

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        *,
        exchange_name: str = "dlx",
        queue_prefix: str = "dlq",
        ttl_hours: int = 24,
        serializer: EnvelopeSerializer | None = None,
        queue_names: Iterable[str] = (),
        **kwargs: Any,
    ) -> None:
        """Configure the service.

        Args:
            connection: Shared connection manager.
            exchange_name: Dead-letter exchange.
            queue_prefix: Prefix of dead-letter queue names.
            ttl_hours: Message TTL of dead-letter queues.
            serializer: Used to serialize reprocessed envelopes.
            queue_names: Dead-letter queues to include in statistics besides
                the ones this process declares.
            **kwargs: Passed to ``BaseDeadLetterService``.
        """
        super().__init__(**kwargs)
        self._connection = connection
        self._exchange_name = exchange_name
        self._queue_prefix = queue_prefix
        self._ttl_ms = ttl_hours * 3600 * 1000
        self._serializer = serializer or EnvelopeSerializer()
        self._known_queues: set[str] = set(queue_names)

    def dead_letter_queue_name(self, source_queue: str) -> str:
        return f"{self._queue_prefix}.{source_queue}"

    async def _declare_exchange(self, channel: AbstractChannel) -> AbstractExchange:
        return await channel.declare_exchange(
            self._exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
        )

    async def _declare(
        self, channel: AbstractChannel, queue_name: str
    ) -> AbstractQueue:
        exchange = await self._declare_exchange(channel)
        queue = await channel.declare_queue(
            queue_name,
            durable=True,
            arguments={"x-message-ttl": self._ttl_ms},
        )
        await queue.bind(exchange, routing_key=queue_name)
        self._known_queues.add(queue_name)
        return queue

    async def _store(self, dlq_name: str, info: FailedMessageInfo) -> None:
        await self._connection.connect()
        async with self._connection.acquire_channel() as channel:
            await self._declare(channel, dlq_name)
            exchange = await self._declare_exchange(channel)
            await exchange.publish(
                aio_pika.Message(
                    body=info.to_json().encode("utf-8"),
                    content_type="application/json",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                    message_id=info.message_id,
                    correlation_id=info.correlation_id,
                    type=info.message_type,
                    headers={
                        "source-queue": info.source_queue,
                        "failure-kind": info.failure_kind.value,
                        "attempt-count": info.attempt_count,
                    },
                ),
                routing_key=dlq_name,
            )
        logger.debug("Stored %s in %s", info.message_id, dlq_name)

    async def _fetch(
        self, queue: AbstractQueue, limit: int
    ) -> list[tuple[AbstractIncomingMessage, FailedMessageInfo]]:
        """Fetch up to *limit* readable records without settling them.

        Unreadable records are skipped and requeued when the fetch ends. If
        the fetch fails, every message it already holds is requeued.
        """
        fetched: list[tuple[AbstractIncomingMessage, FailedMessageInfo]] = []
        unreadable: list[AbstractIncomingMessage] = []
        try:
            while len(fetched) < limit:
                message = await queue.get(no_ack=False, fail=False)
                if message is None:
                    break
                try:
                    info = FailedMessageInfo.from_json(message.body)
                except MessagingSerializationError:
                    logger.warning(
                        "Skipping unreadable dead-letter message %s in %s",
                        message.message_id,
                        queue.name,
                    )
                    unreadable.append(message)
                    continue
                fetched.append((message, info))
        except BaseException:
            await _requeue(message for message, _ in fetched)
            raise
        finally:
            await _requeue(unreadable)
        return fetched

    async def _list(self, queue_name: str, max_count: int) -> list[FailedMessageInfo]:
        await self._connection.connect()
        async with self._connection.acquire_channel() as channel:
            queue = await self._declare(channel, queue_name)
            fetched = await self._fetch(queue, max_count)
            await _requeue(message for message, _ in fetched)
        return [info for _, info in fetched]

    async def _take(
        self,
        channel: AbstractChannel,
        queue_name: str,
        message_id: str,
    ) -> tuple[AbstractIncomingMessage, FailedMessageInfo] | None:
        """Fetch the record with *message_id*; every other message is requeued."""
        queue = await self._declare(channel, queue_name)
        declared = queue.declaration_result
        depth = declared.message_count if declared is not None else 0
        fetched = await self._fetch(queue, max(depth, 1))
        found = None
        others: list[AbstractIncomingMessage] = []
        for message, info in fetched:
            if found is None and info.message_id == message_id:
                found = (message, info)
            else:
                others.append(message)
        await _requeue(others)
        return found

    async def _reprocess(self, queue_name: str, message_id: str) -> bool:
        await self._connection.connect()
        async with self._connection.acquire_channel() as channel:
            found = await self._take(channel, queue_name, message_id)
            if found is None:
                return False
            message, info = found
            try:
                envelope = self.reprocessed_envelope(info)
                await channel.default_exchange.publish(
                    build_message(envelope, self._serializer.serialize(envelope)),
                    routing_key=info.source_queue,
                )
            except BaseException:
                await message.reject(requeue=True)
                raise
            await message.ack()
        return True

    async def _purge(self, queue_name: str, message_id: str) -> bool:
        await self._connection.connect()
        async with self._connection.acquire_channel() as channel:
            found = await self._take(channel, queue_name, message_id)
            if found is None:
                return False
            await found[0].ack()
        return True

    async def _statistics(self) -> DeadLetterStatistics:
        await self._connection.connect()
        by_queue: dict[str, int] = {}
        records: list[FailedMessageInfo] = []
        for queue_name in sorted(self._known_queues):
            async with self._connection.acquire_channel() as channel:
                queue = await channel.declare_queue(queue_name, passive=True)
                declared = queue.declaration_result
                count = declared.message_count if declared is not None else 0
                if count:
                    by_queue[queue_name] = count
            records.extend(await self._list(queue_name, count))
        stats = DeadLetterStatistics.from_records(records, by_queue=by_queue)
        return stats.model_copy(
            update={"total_dead_lettered": sum(by_queue.values())}
        )

    async def connect(self) -> None:
        await self._connection.connect()

    async def close(self) -> None:
        await self._connection.close()

    async def health_check(self) -> bool:
        return await self._connection.health_check()


async def _requeue(messages: Iterable[AbstractIncomingMessage]) -> None:
    for message in messages:
        await message.reject(requeue=True)
