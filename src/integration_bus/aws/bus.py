"""AwsMessageBus: SNS topics for publish, SQS queues for send and delivery."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import TYPE_CHECKING, Any

from ..bus import BaseMessageBus

if TYPE_CHECKING:
    from ..bus import Subscription
    from ..envelope import MessageEnvelope
    from .connection import AwsConnectionManager

logger = logging.getLogger("integration_bus.aws")

MESSAGE_TYPE_ATTRIBUTE = "MessageType"
MAX_VISIBILITY_TIMEOUT = 43_200


def message_attributes(envelope: MessageEnvelope) -> dict[str, dict[str, str]]:
    """SNS/SQS message attributes; ``MessageType`` drives subscription filters."""
    return {
        MESSAGE_TYPE_ATTRIBUTE: {
            "DataType": "String",
            "StringValue": envelope.message_type,
        },
        "CorrelationId": {
            "DataType": "String",
            "StringValue": envelope.correlation_id,
        },
    }


class AwsMessageBus(BaseMessageBus):
    """AWS adapter implementing IMessageBus.

    Each subscription owns an SQS queue subscribed to the SNS topic with the
    filter policy ``{"MessageType": [<type>]}``, and is drained by
    ``max_concurrent_calls`` long-polling workers. A message stays invisible
    while it is retried: its visibility timeout is extended before every
    backoff wait.
    """

    transport_name = "aws"

    def __init__(
        self,
        connection: AwsConnectionManager,
        *,
        wait_time_seconds: int = 20,
        visibility_timeout: int = 30,
        **kwargs: Any,
    ) -> None:
        """Configure the bus.

        Args:
            connection: Shared connection manager.
            wait_time_seconds: Long-poll wait.
            visibility_timeout: Visibility timeout for received messages.
            **kwargs: Passed to ``BaseMessageBus``.
        """
        super().__init__(**kwargs)
        self._connection = connection
        self._wait_time_seconds = wait_time_seconds
        self._visibility_timeout = visibility_timeout
        self._running = False

    async def connect(self) -> None:
        await self._connection.get_client("sns")
        await self._connection.get_client("sqs")
        self._running = True

    async def _send(self, queue: str, envelope: MessageEnvelope, body: bytes) -> None:
        queue_url = await self._connection.get_queue_url(queue)
        sqs = await self._connection.get_client("sqs")
        send_kwargs: dict[str, Any] = {
            "QueueUrl": queue_url,
            "MessageBody": body.decode("utf-8"),
            "MessageAttributes": message_attributes(envelope),
        }
        if queue_url.endswith(".fifo"):
            send_kwargs["MessageDeduplicationId"] = envelope.message_id
            send_kwargs["MessageGroupId"] = envelope.correlation_id
        await sqs.send_message(**send_kwargs)

    async def _publish(
        self, topic: str, envelope: MessageEnvelope, body: bytes
    ) -> None:
        topic_arn = await self._connection.get_topic_arn(topic)
        sns = await self._connection.get_client("sns")
        await sns.publish(
            TopicArn=topic_arn,
            Message=body.decode("utf-8"),
            MessageAttributes=message_attributes(envelope),
        )

    async def _subscribe(self, subscription: Subscription) -> None:
        queue_url = await self._connection.subscribe_queue(
            subscription.topic,
            subscription.name,
            filter_policy={MESSAGE_TYPE_ATTRIBUTE: [subscription.message_type]},
        )
        self._running = True
        for _ in range(self._max_concurrent_calls):
            subscription.tasks.append(
                asyncio.create_task(self._poll(subscription, queue_url))
            )

    async def _poll(self, subscription: Subscription, queue_url: str) -> None:
        """Receive from the subscription queue until the bus closes."""
        sqs = await self._connection.get_client("sqs")
        while self._running:
            try:
                out = await sqs.receive_message(
                    QueueUrl=queue_url,
                    MaxNumberOfMessages=10,
                    WaitTimeSeconds=self._wait_time_seconds,
                    VisibilityTimeout=self._visibility_timeout,
                    MessageAttributeNames=["All"],
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                logger.warning(
                    "Receive from %s failed: %s; retrying", subscription.name, e
                )
                await asyncio.sleep(1)
                continue
            for msg in out.get("Messages", []):
                if not self._running:
                    break
                await self._handle(sqs, subscription, queue_url, msg)

    async def _handle(
        self,
        sqs: Any,
        subscription: Subscription,
        queue_url: str,
        msg: dict[str, Any],
    ) -> None:
        """Delete the message once handled or dead-lettered; otherwise make
        it visible again for redelivery."""
        receipt = msg["ReceiptHandle"]
        body = _unwrap_notification(msg.get("Body", ""))

        async def extend_visibility(envelope: MessageEnvelope, delay: float) -> None:
            timeout = min(
                self._visibility_timeout + math.ceil(delay), MAX_VISIBILITY_TIMEOUT
            )
            try:
                await sqs.change_message_visibility(
                    QueueUrl=queue_url, ReceiptHandle=receipt, VisibilityTimeout=timeout
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                logger.warning(
                    "Could not extend visibility of %s on %s: %s",
                    envelope.message_id,
                    subscription.name,
                    e,
                )

        try:
            await self._dispatch(subscription, body, before_retry=extend_visibility)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.error(
                "Could not settle message %s on %s: %s",
                msg.get("MessageId"),
                subscription.name,
                e,
            )
            await sqs.change_message_visibility(
                QueueUrl=queue_url, ReceiptHandle=receipt, VisibilityTimeout=0
            )
            return
        await sqs.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt)

    async def close(self) -> None:
        self._running = False
        await super().close()
        await self._connection.close()

    async def health_check(self) -> bool:
        return await self._connection.health_check()


def _unwrap_notification(body: str) -> str:
    """Return the inner message of an SNS notification not sent raw."""
    if '"Type"' not in body or '"TopicArn"' not in body:
        return body
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body
    if isinstance(data, dict) and data.get("Type") == "Notification":
        return str(data.get("Message", ""))
    return body
