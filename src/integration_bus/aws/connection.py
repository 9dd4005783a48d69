"""SNS/SQS client management, topic ARN and queue URL resolution."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from aiobotocore.session import AioSession
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import MessagingConnectionError

logger = logging.getLogger("integration_bus.aws")

NON_EXISTENT_QUEUE = "AWS.SimpleQueueService.NonExistentQueue"


def _error_code(exc: BaseException) -> str:
    response = getattr(exc, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


class AwsConnectionManager:
    """Manages aiobotocore SNS and SQS clients and caches resolved names.

    Topics and queues are created on first use (both calls are idempotent
    on AWS).
    """

    def __init__(
        self,
        region_name: str = "us-east-1",
        *,
        session: AioSession | None = None,
        **client_kwargs: Any,
    ) -> None:
        """Configure region and optional session/client kwargs."""
        self._region = region_name
        self._session = session or AioSession()
        self._client_kwargs = client_kwargs
        self._clients: dict[str, Any] = {}
        self._client_cms: dict[str, Any] = {}
        self._queue_urls: dict[str, str] = {}
        self._topic_arns: dict[str, str] = {}
        self._client_lock = asyncio.Lock()

    async def get_client(self, service: str) -> Any:
        """Return the shared client for *service* (``sns`` or ``sqs``)."""
        client = self._clients.get(service)
        if client is not None:
            return client
        async with self._client_lock:
            client = self._clients.get(service)
            if client is None:
                cm = self._session.create_client(
                    service,
                    region_name=self._region,
                    **self._client_kwargs,
                )
                try:
                    client = await cm.__aenter__()
                except (BotoCoreError, OSError) as e:
                    raise MessagingConnectionError(str(e)) from e
                self._client_cms[service] = cm
                self._clients[service] = client
        return client

    async def get_queue_url(
        self,
        queue_name: str,
        *,
        attributes: dict[str, str] | None = None,
    ) -> str:
        """Resolve a queue name to its URL, creating the queue if missing."""
        cached = self._queue_urls.get(queue_name)
        if cached is not None:
            return cached
        sqs = await self.get_client("sqs")
        try:
            out = await sqs.get_queue_url(QueueName=queue_name)
        except ClientError as e:
            if _error_code(e) != NON_EXISTENT_QUEUE:
                raise
            kwargs: dict[str, Any] = {"QueueName": queue_name}
            if attributes:
                kwargs["Attributes"] = attributes
            out = await sqs.create_queue(**kwargs)
            logger.info("Created SQS queue %s", queue_name)
        url = str(out["QueueUrl"])
        self._queue_urls[queue_name] = url
        return url

    async def get_queue_arn(self, queue_url: str) -> str:
        sqs = await self.get_client("sqs")
        out = await sqs.get_queue_attributes(
            QueueUrl=queue_url, AttributeNames=["QueueArn"]
        )
        return str(out["Attributes"]["QueueArn"])

    async def get_topic_arn(self, topic: str) -> str:
        """Resolve a topic name to its ARN, creating the topic if missing."""
        cached = self._topic_arns.get(topic)
        if cached is not None:
            return cached
        sns = await self.get_client("sns")
        out = await sns.create_topic(Name=topic)
        arn = str(out["TopicArn"])
        self._topic_arns[topic] = arn
        return arn

    async def subscribe_queue(
        self,
        topic: str,
        queue_name: str,
        filter_policy: dict[str, list[str]] | None = None,
    ) -> str:
        """Subscribe the SQS queue to the SNS topic; returns the queue URL.

        Raw delivery is enabled, so queue bodies are the published payload.
        """
        topic_arn = await self.get_topic_arn(topic)
        queue_url = await self.get_queue_url(queue_name)
        queue_arn = await self.get_queue_arn(queue_url)
        policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": "sns.amazonaws.com"},
                    "Action": "sqs:SendMessage",
                    "Resource": queue_arn,
                    "Condition": {"ArnEquals": {"aws:SourceArn": topic_arn}},
                }
            ],
        }
        sqs = await self.get_client("sqs")
        await sqs.set_queue_attributes(
            QueueUrl=queue_url, Attributes={"Policy": json.dumps(policy)}
        )
        attributes = {"RawMessageDelivery": "true"}
        if filter_policy:
            attributes["FilterPolicy"] = json.dumps(filter_policy)
        sns = await self.get_client("sns")
        await sns.subscribe(
            TopicArn=topic_arn,
            Protocol="sqs",
            Endpoint=queue_arn,
            Attributes=attributes,
            ReturnSubscriptionArn=True,
        )
        return queue_url

    async def list_queue_urls(self, prefix: str = "") -> list[str]:
        sqs = await self.get_client("sqs")
        kwargs: dict[str, Any] = {"QueueNamePrefix": prefix} if prefix else {}
        urls: list[str] = []
        while True:
            out = await sqs.list_queues(**kwargs)
            urls.extend(out.get("QueueUrls", []))
            token = out.get("NextToken")
            if not token:
                return urls
            kwargs["NextToken"] = token

    async def close(self) -> None:
        """Close open clients."""
        for service, cm in list(self._client_cms.items()):
            await cm.__aexit__(None, None, None)
            del self._client_cms[service]
        self._clients.clear()

    async def health_check(self) -> bool:
        """Return True if we can list queues (lightweight check)."""
        try:
            sqs = await self.get_client("sqs")
            await sqs.list_queues(MaxResults=1)
            return True
        except Exception:  # noqa: BLE001
            return False
