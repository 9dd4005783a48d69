"""AwsDeadLetterService: SQS ``<source>-dlq`` queues as the dead-letter store."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..dead_letter.base import BaseDeadLetterService
from ..dead_letter.models import DeadLetterStatistics, FailedMessageInfo
from ..exceptions import MessagingSerializationError
from ..serialization import EnvelopeSerializer
from .bus import message_attributes

if TYPE_CHECKING:
    from .connection import AwsConnectionManager

logger = logging.getLogger("integration_bus.aws.dead_letter")

_MAX_RETENTION_SECONDS = 1_209_600
_BATCH = 10


class AwsDeadLetterService(BaseDeadLetterService):
    """Dead-letter store on SQS.

    Listing and lookups receive with a short visibility timeout and make the
    untouched messages visible again, so reading never consumes records.
    """

    def __init__(
        self,
        connection: AwsConnectionManager,
        *,
        queue_suffix: str = "-dlq",
        ttl_hours: int = 24,
        serializer: EnvelopeSerializer | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._connection = connection
        self._queue_suffix = queue_suffix
        self._retention = str(min(ttl_hours * 3600, _MAX_RETENTION_SECONDS))
        self._serializer = serializer or EnvelopeSerializer()

    def dead_letter_queue_name(self, source_queue: str) -> str:
        return f"{source_queue}{self._queue_suffix}"

    async def _queue_url(self, queue_name: str) -> str:
        return await self._connection.get_queue_url(
            queue_name, attributes={"MessageRetentionPeriod": self._retention}
        )

    async def _store(self, dlq_name: str, info: FailedMessageInfo) -> None:
        queue_url = await self._queue_url(dlq_name)
        sqs = await self._connection.get_client("sqs")
        await sqs.send_message(
            QueueUrl=queue_url,
            MessageBody=info.to_json(),
            MessageAttributes={
                "MessageType": {
                    "DataType": "String",
                    "StringValue": info.message_type,
                },
                "SourceQueue": {
                    "DataType": "String",
                    "StringValue": info.source_queue,
                },
            },
        )
        logger.debug("Stored %s in %s", info.message_id, dlq_name)

    async def _receive_all(
        self, queue_url: str, limit: int
    ) -> list[tuple[str, FailedMessageInfo]]:
        """Receive up to *limit* records as ``(receipt_handle, info)`` pairs."""
        sqs = await self._connection.get_client("sqs")
        received: dict[str, tuple[str, FailedMessageInfo]] = {}
        unreadable: list[str] = []
        while len(received) < limit:
            out = await sqs.receive_message(
                QueueUrl=queue_url,
                MaxNumberOfMessages=min(_BATCH, limit - len(received)),
                WaitTimeSeconds=0,
                VisibilityTimeout=30,
            )
            messages = out.get("Messages", [])
            if not messages:
                break
            for msg in messages:
                try:
                    info = FailedMessageInfo.from_json(msg.get("Body", ""))
                except MessagingSerializationError:
                    logger.warning(
                        "Skipping unreadable dead-letter message %s",
                        msg.get("MessageId"),
                    )
                    unreadable.append(msg["ReceiptHandle"])
                    continue
                received[info.message_id] = (msg["ReceiptHandle"], info)
        await self._release(queue_url, unreadable)
        return list(received.values())

    async def _release(self, queue_url: str, receipts: list[str]) -> None:
        sqs = await self._connection.get_client("sqs")
        for receipt in receipts:
            await sqs.change_message_visibility(
                QueueUrl=queue_url, ReceiptHandle=receipt, VisibilityTimeout=0
            )

    async def _list(self, queue_name: str, max_count: int) -> list[FailedMessageInfo]:
        queue_url = await self._queue_url(queue_name)
        received = await self._receive_all(queue_url, max_count)
        await self._release(queue_url, [receipt for receipt, _ in received])
        return [info for _, info in received]

    async def _take(
        self, queue_url: str, message_id: str
    ) -> tuple[str, FailedMessageInfo] | None:
        depth = await self._depth(queue_url)
        received = await self._receive_all(queue_url, max(depth, _BATCH))
        found = None
        others: list[str] = []
        for receipt, info in received:
            if found is None and info.message_id == message_id:
                found = (receipt, info)
            else:
                others.append(receipt)
        await self._release(queue_url, others)
        return found

    async def _reprocess(self, queue_name: str, message_id: str) -> bool:
        queue_url = await self._queue_url(queue_name)
        found = await self._take(queue_url, message_id)
        if found is None:
            return False
        receipt, info = found
        sqs = await self._connection.get_client("sqs")
        try:
            envelope = self.reprocessed_envelope(info)
            source_url = await self._connection.get_queue_url(info.source_queue)
            await sqs.send_message(
                QueueUrl=source_url,
                MessageBody=self._serializer.serialize(envelope).decode("utf-8"),
                MessageAttributes=message_attributes(envelope),
            )
        except Exception:
            await self._release(queue_url, [receipt])
            raise
        await sqs.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt)
        return True

    async def _purge(self, queue_name: str, message_id: str) -> bool:
        queue_url = await self._queue_url(queue_name)
        found = await self._take(queue_url, message_id)
        if found is None:
            return False
        sqs = await self._connection.get_client("sqs")
        await sqs.delete_message(QueueUrl=queue_url, ReceiptHandle=found[0])
        return True

    async def _depth(self, queue_url: str) -> int:
        sqs = await self._connection.get_client("sqs")
        out = await sqs.get_queue_attributes(
            QueueUrl=queue_url, AttributeNames=["ApproximateNumberOfMessages"]
        )
        return int(out.get("Attributes", {}).get("ApproximateNumberOfMessages", 0))

    async def _statistics(self) -> DeadLetterStatistics:
        by_queue: dict[str, int] = {}
        records: list[FailedMessageInfo] = []
        for queue_url in await self._connection.list_queue_urls():
            queue_name = queue_url.rstrip("/").rsplit("/", 1)[-1]
            if not queue_name.endswith(self._queue_suffix):
                continue
            count = await self._depth(queue_url)
            if not count:
                continue
            by_queue[queue_name] = count
            received = await self._receive_all(queue_url, count)
            await self._release(queue_url, [receipt for receipt, _ in received])
            records.extend(info for _, info in received)
        stats = DeadLetterStatistics.from_records(records, by_queue=by_queue)
        return stats.model_copy(
            update={"total_dead_lettered": sum(by_queue.values())}
        )

    async def connect(self) -> None:
        await self._connection.get_client("sqs")

    async def close(self) -> None:
        await self._connection.close()

    async def health_check(self) -> bool:
        return await self._connection.health_check()
