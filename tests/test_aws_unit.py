"""Unit tests for the AWS transport with mocked aiobotocore (no real AWS)."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoRegionError

from integration_bus.aws import (
    AwsConnectionManager,
    AwsDeadLetterService,
    AwsMessageBus,
    classify_aws_error,
)
from integration_bus.aws.bus import _unwrap_notification
from integration_bus.aws.connection import NON_EXISTENT_QUEUE
from integration_bus.classification import FailureKind
from integration_bus.dead_letter.memory import InMemoryDeadLetterService
from integration_bus.dead_letter.models import FailedMessageInfo
from integration_bus.envelope import MessageEnvelope
from integration_bus.exceptions import (
    DeadLetterOperationError,
    MessagingConnectionError,
    TransportError,
)
from integration_bus.registry import EventTypeRegistry
from integration_bus.retry import RetryPolicy
from integration_bus.serialization import EnvelopeSerializer
from integration_bus.topics import TopicStrategySelector

from .sample_events import OrderPlaced

TOPIC_ARN = "arn:aws:sns:sa-east-1:123:app-events"
QUEUE_URL = "https://sqs.sa-east-1.amazonaws.com/123/billing.order_placed"


def _client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


def _queue_url(name: str, **kwargs: object) -> str:
    return f"https://sqs.sa-east-1.amazonaws.com/123/{name}"


@pytest.fixture
def mock_session() -> MagicMock:
    session = MagicMock()
    clients: dict[str, MagicMock] = {}

    def create_client(service: str, **kwargs: object) -> MagicMock:
        client = MagicMock()
        client.get_queue_url = AsyncMock(return_value={"QueueUrl": QUEUE_URL})
        client.create_queue = AsyncMock(return_value={"QueueUrl": QUEUE_URL})
        client.get_queue_attributes = AsyncMock(
            return_value={"Attributes": {"QueueArn": "arn:aws:sqs:queue"}}
        )
        client.set_queue_attributes = AsyncMock()
        client.list_queues = AsyncMock(return_value={"QueueUrls": []})
        client.create_topic = AsyncMock(return_value={"TopicArn": TOPIC_ARN})
        client.subscribe = AsyncMock()
        clients[service] = client
        cm = MagicMock()
        cm.__aenter__ = AsyncMock(return_value=client)
        cm.__aexit__ = AsyncMock(return_value=None)
        return cm

    session.create_client = MagicMock(side_effect=create_client)
    session.clients = clients
    return session


@pytest.fixture
def sqs() -> MagicMock:
    client = MagicMock()
    client.send_message = AsyncMock()
    client.delete_message = AsyncMock()
    client.change_message_visibility = AsyncMock()
    client.receive_message = AsyncMock(return_value={"Messages": []})
    client.get_queue_attributes = AsyncMock(
        return_value={"Attributes": {"ApproximateNumberOfMessages": "0"}}
    )
    return client


@pytest.fixture
def sns() -> MagicMock:
    client = MagicMock()
    client.publish = AsyncMock()
    return client


@pytest.fixture
def mock_connection(sqs: MagicMock, sns: MagicMock) -> MagicMock:
    conn = MagicMock()
    clients = {"sqs": sqs, "sns": sns}
    conn.get_client = AsyncMock(side_effect=lambda service: clients[service])
    conn.get_queue_url = AsyncMock(side_effect=_queue_url)
    conn.get_topic_arn = AsyncMock(return_value=TOPIC_ARN)
    conn.subscribe_queue = AsyncMock(return_value=QUEUE_URL)
    conn.list_queue_urls = AsyncMock(return_value=[])
    conn.close = AsyncMock()
    conn.health_check = AsyncMock(return_value=True)
    return conn


@pytest.fixture
def bus(
    mock_connection: MagicMock,
    registry: EventTypeRegistry,
    selector: TopicStrategySelector,
    dead_letter: InMemoryDeadLetterService,
) -> AwsMessageBus:
    return AwsMessageBus(
        mock_connection,
        wait_time_seconds=1,
        registry=registry,
        selector=selector,
        dead_letter=dead_letter,
        service_name="billing",
    )


def _sqs_message(body: str, receipt: str = "rh-1") -> dict[str, str]:
    return {"MessageId": f"m-{receipt}", "ReceiptHandle": receipt, "Body": body}


def _record(info: FailedMessageInfo, receipt: str) -> dict[str, str]:
    return _sqs_message(info.to_json(), receipt)


# -- connection manager ------------------------------------------------------


@pytest.mark.asyncio
async def test_get_client_creates_and_caches(mock_session: MagicMock) -> None:
    conn = AwsConnectionManager("sa-east-1", session=mock_session)
    first = await conn.get_client("sqs")
    assert await conn.get_client("sqs") is first
    await conn.get_client("sns")
    services = [c.args[0] for c in mock_session.create_client.call_args_list]
    assert services == ["sqs", "sns"]
    assert mock_session.create_client.call_args.kwargs["region_name"] == "sa-east-1"


@pytest.mark.asyncio
async def test_get_client_wraps_connection_errors() -> None:
    session = MagicMock()
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(
        side_effect=EndpointConnectionError(endpoint_url="http://localhost:4566")
    )
    session.create_client = MagicMock(return_value=cm)
    conn = AwsConnectionManager(session=session)
    with pytest.raises(MessagingConnectionError):
        await conn.get_client("sqs")


@pytest.mark.asyncio
async def test_concurrent_first_calls_share_one_client() -> None:
    session = MagicMock()

    async def slow_enter() -> MagicMock:
        await asyncio.sleep(0)
        return MagicMock()

    def create_client(service: str, **kwargs: object) -> MagicMock:
        cm = MagicMock()
        cm.__aenter__ = AsyncMock(side_effect=slow_enter)
        cm.__aexit__ = AsyncMock(return_value=None)
        return cm

    session.create_client = MagicMock(side_effect=create_client)
    conn = AwsConnectionManager(session=session)

    clients = await asyncio.gather(*(conn.get_client("sqs") for _ in range(5)))

    assert all(client is clients[0] for client in clients)
    assert session.create_client.call_count == 1


@pytest.mark.asyncio
async def test_get_queue_url_is_cached(mock_session: MagicMock) -> None:
    conn = AwsConnectionManager(session=mock_session)
    assert await conn.get_queue_url("billing.order_placed") == QUEUE_URL
    assert await conn.get_queue_url("billing.order_placed") == QUEUE_URL
    client = mock_session.clients["sqs"]
    client.get_queue_url.assert_called_once_with(QueueName="billing.order_placed")


@pytest.mark.asyncio
async def test_get_queue_url_creates_missing_queue(mock_session: MagicMock) -> None:
    conn = AwsConnectionManager(session=mock_session)
    client = await conn.get_client("sqs")
    client.get_queue_url.side_effect = _client_error(NON_EXISTENT_QUEUE)

    await conn.get_queue_url(
        "orders-dlq", attributes={"MessageRetentionPeriod": "86400"}
    )

    client.create_queue.assert_called_once_with(
        QueueName="orders-dlq", Attributes={"MessageRetentionPeriod": "86400"}
    )


@pytest.mark.asyncio
async def test_get_queue_url_raises_other_client_errors(
    mock_session: MagicMock,
) -> None:
    conn = AwsConnectionManager(session=mock_session)
    client = await conn.get_client("sqs")
    client.get_queue_url.side_effect = _client_error("AccessDenied", 403)
    with pytest.raises(ClientError):
        await conn.get_queue_url("orders")
    client.create_queue.assert_not_called()


@pytest.mark.asyncio
async def test_subscribe_queue_sets_policy_and_filter(mock_session: MagicMock) -> None:
    conn = AwsConnectionManager(session=mock_session)
    url = await conn.subscribe_queue(
        "app-events", "billing.order_placed", {"MessageType": ["OrderPlaced"]}
    )
    assert url == QUEUE_URL

    sqs_client = mock_session.clients["sqs"]
    policy = json.loads(
        sqs_client.set_queue_attributes.call_args.kwargs["Attributes"]["Policy"]
    )
    statement = policy["Statement"][0]
    assert statement["Condition"]["ArnEquals"]["aws:SourceArn"] == TOPIC_ARN

    sns_client = mock_session.clients["sns"]
    kwargs = sns_client.subscribe.call_args.kwargs
    assert kwargs["TopicArn"] == TOPIC_ARN
    assert kwargs["Protocol"] == "sqs"
    assert kwargs["Attributes"]["RawMessageDelivery"] == "true"
    assert json.loads(kwargs["Attributes"]["FilterPolicy"]) == {
        "MessageType": ["OrderPlaced"]
    }


@pytest.mark.asyncio
async def test_list_queue_urls_follows_pagination(mock_session: MagicMock) -> None:
    conn = AwsConnectionManager(session=mock_session)
    client = await conn.get_client("sqs")
    client.list_queues.side_effect = [
        {"QueueUrls": ["u1", "u2"], "NextToken": "t"},
        {"QueueUrls": ["u3"]},
    ]
    assert await conn.list_queue_urls() == ["u1", "u2", "u3"]
    assert client.list_queues.call_args.kwargs == {"NextToken": "t"}


@pytest.mark.asyncio
async def test_close_and_health_check(mock_session: MagicMock) -> None:
    conn = AwsConnectionManager(session=mock_session)
    assert await conn.health_check() is True
    client = mock_session.clients["sqs"]
    client.list_queues.assert_called_once_with(MaxResults=1)
    client.list_queues.side_effect = RuntimeError("timeout")
    assert await conn.health_check() is False
    await conn.close()
    await conn.get_client("sqs")
    assert mock_session.create_client.call_count == 2


# -- message bus -------------------------------------------------------------


@pytest.mark.asyncio
async def test_publish_sets_message_type_attribute(
    bus: AwsMessageBus, sns: MagicMock, mock_connection: MagicMock
) -> None:
    await bus.publish(OrderPlaced(order_id="1"))

    mock_connection.get_topic_arn.assert_awaited_once_with("app-events")
    kwargs = sns.publish.call_args.kwargs
    assert kwargs["TopicArn"] == TOPIC_ARN
    assert kwargs["MessageAttributes"]["MessageType"]["StringValue"] == "OrderPlaced"
    assert json.loads(kwargs["Message"])["payload"]["order_id"] == "1"


@pytest.mark.asyncio
async def test_send_to_standard_and_fifo_queues(
    bus: AwsMessageBus, sqs: MagicMock
) -> None:
    await bus.send(OrderPlaced(order_id="1"), "orders")
    await bus.send(OrderPlaced(order_id="2"), "orders.fifo")

    standard, fifo = (c.kwargs for c in sqs.send_message.call_args_list)
    assert standard["QueueUrl"].endswith("/orders")
    assert "MessageDeduplicationId" not in standard
    assert fifo["MessageDeduplicationId"]
    assert fifo["MessageGroupId"]


@pytest.mark.asyncio
async def test_aws_failures_are_wrapped(bus: AwsMessageBus, sns: MagicMock) -> None:
    sns.publish.side_effect = _client_error("NotFound", 404)
    with pytest.raises(TransportError) as exc_info:
        await bus.publish(OrderPlaced(order_id="1"))
    assert isinstance(exc_info.value.__cause__, ClientError)


@pytest.mark.asyncio
async def test_subscribe_polls_and_deletes_handled_messages(
    bus: AwsMessageBus, sqs: MagicMock, mock_connection: MagicMock
) -> None:
    body = EnvelopeSerializer().serialize(
        MessageEnvelope.wrap(OrderPlaced(order_id="5"))
    )
    batches = [{"Messages": [_sqs_message(body.decode("utf-8"))]}]

    async def receive_message(**kwargs: object) -> dict[str, object]:
        if batches:
            return batches.pop(0)
        await asyncio.Event().wait()
        return {}

    sqs.receive_message = AsyncMock(side_effect=receive_message)
    received: list[MessageEnvelope] = []

    async def handler(envelope: MessageEnvelope) -> None:
        received.append(envelope)

    await bus.subscribe(OrderPlaced, handler)
    mock_connection.subscribe_queue.assert_awaited_once_with(
        "app-events",
        "billing.order_placed",
        filter_policy={"MessageType": ["OrderPlaced"]},
    )
    for _ in range(50):
        if sqs.delete_message.await_count:
            break
        await asyncio.sleep(0)

    assert received[0].payload.order_id == "5"
    sqs.delete_message.assert_awaited_once_with(
        QueueUrl=QUEUE_URL, ReceiptHandle="rh-1"
    )
    await bus.close()
    assert all(not s.tasks for s in bus.subscriptions)
    mock_connection.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_handle_deletes_undecodable_message_after_dead_lettering(
    bus: AwsMessageBus, sqs: MagicMock, dead_letter: InMemoryDeadLetterService
) -> None:
    async def handler(envelope: MessageEnvelope) -> None:
        return None

    await bus.subscribe(OrderPlaced, handler)
    (subscription,) = bus.subscriptions
    for task in subscription.tasks:
        task.cancel()

    await bus._handle(sqs, subscription, QUEUE_URL, _sqs_message("garbage"))

    sqs.delete_message.assert_awaited_once()
    stats = await dead_letter.get_dead_letter_statistics()
    assert stats.total_dead_lettered == 1


@pytest.mark.asyncio
async def test_handle_releases_message_when_dead_letter_fails(
    bus: AwsMessageBus, sqs: MagicMock, dead_letter: InMemoryDeadLetterService
) -> None:
    async def handler(envelope: MessageEnvelope) -> None:
        return None

    await bus.subscribe(OrderPlaced, handler)
    (subscription,) = bus.subscriptions
    for task in subscription.tasks:
        task.cancel()
    dead_letter._store = AsyncMock(side_effect=ConnectionError("dlq down"))

    await bus._handle(sqs, subscription, QUEUE_URL, _sqs_message("garbage"))

    sqs.delete_message.assert_not_called()
    sqs.change_message_visibility.assert_awaited_once_with(
        QueueUrl=QUEUE_URL, ReceiptHandle="rh-1", VisibilityTimeout=0
    )


@pytest.fixture
def backoff_bus(
    mock_connection: MagicMock,
    registry: EventTypeRegistry,
    selector: TopicStrategySelector,
    monkeypatch: pytest.MonkeyPatch,
) -> AwsMessageBus:
    monkeypatch.setattr(
        "integration_bus.dead_letter.middleware.asyncio.sleep", AsyncMock()
    )
    return AwsMessageBus(
        mock_connection,
        visibility_timeout=30,
        registry=registry,
        selector=selector,
        dead_letter=InMemoryDeadLetterService(
            retry_policy=RetryPolicy(max_attempts=5)
        ),
        service_name="billing",
    )


def _order_body() -> str:
    envelope = MessageEnvelope.wrap(OrderPlaced(order_id="1"))
    return EnvelopeSerializer().serialize(envelope).decode("utf-8")


@pytest.mark.asyncio
async def test_handle_extends_visibility_before_each_backoff(
    backoff_bus: AwsMessageBus, sqs: MagicMock
) -> None:
    async def handler(envelope: MessageEnvelope) -> None:
        raise TimeoutError("downstream timeout")

    await backoff_bus.subscribe(OrderPlaced, handler)
    (subscription,) = backoff_bus.subscriptions
    for task in subscription.tasks:
        task.cancel()

    await backoff_bus._handle(
        sqs, subscription, QUEUE_URL, _sqs_message(_order_body())
    )

    timeouts = [
        c.kwargs["VisibilityTimeout"]
        for c in sqs.change_message_visibility.await_args_list
    ]
    assert timeouts == [32, 34, 38, 46, 62]
    assert all(
        c.kwargs["ReceiptHandle"] == "rh-1"
        for c in sqs.change_message_visibility.await_args_list
    )
    sqs.delete_message.assert_awaited_once_with(
        QueueUrl=QUEUE_URL, ReceiptHandle="rh-1"
    )
    stats = await backoff_bus.dead_letter.get_dead_letter_statistics()
    assert stats.total_dead_lettered == 1


@pytest.mark.asyncio
async def test_failed_visibility_extension_does_not_stop_retries(
    backoff_bus: AwsMessageBus, sqs: MagicMock
) -> None:
    attempts: list[int] = []

    async def handler(envelope: MessageEnvelope) -> None:
        attempts.append(envelope.attempt_count)
        if len(attempts) == 1:
            raise TimeoutError("downstream timeout")

    await backoff_bus.subscribe(OrderPlaced, handler)
    (subscription,) = backoff_bus.subscriptions
    for task in subscription.tasks:
        task.cancel()
    sqs.change_message_visibility.side_effect = _client_error("ReceiptHandleIsInvalid")

    await backoff_bus._handle(
        sqs, subscription, QUEUE_URL, _sqs_message(_order_body())
    )

    assert attempts == [1, 2]
    sqs.delete_message.assert_awaited_once()


def test_unwrap_notification() -> None:
    inner = '{"message_type": "OrderPlaced"}'
    wrapped = json.dumps(
        {"Type": "Notification", "TopicArn": TOPIC_ARN, "Message": inner}
    )
    assert _unwrap_notification(wrapped) == inner
    assert _unwrap_notification(inner) == inner


# -- dead-letter service -----------------------------------------------------


@pytest.mark.asyncio
async def test_dead_letter_store_uses_suffixed_queue(
    mock_connection: MagicMock, sqs: MagicMock
) -> None:
    service = AwsDeadLetterService(mock_connection, ttl_hours=1)
    info = await service.send_to_dead_letter(
        MessageEnvelope.wrap(OrderPlaced(order_id="1")),
        TimeoutError("slow"),
        "h",
        "billing.order_placed",
        4,
    )
    assert info is not None
    mock_connection.get_queue_url.assert_awaited_once_with(
        "billing.order_placed-dlq",
        attributes={"MessageRetentionPeriod": "3600"},
    )
    kwargs = sqs.send_message.call_args.kwargs
    assert kwargs["QueueUrl"].endswith("/billing.order_placed-dlq")
    assert kwargs["MessageAttributes"]["SourceQueue"]["StringValue"] == (
        "billing.order_placed"
    )
    assert FailedMessageInfo.from_json(kwargs["MessageBody"]).attempt_count == 4


def test_dead_letter_retention_is_capped(mock_connection: MagicMock) -> None:
    service = AwsDeadLetterService(mock_connection, ttl_hours=24 * 30)
    assert service._retention == "1209600"


@pytest.mark.asyncio
async def test_dead_letter_list_releases_messages(
    mock_connection: MagicMock, sqs: MagicMock
) -> None:
    info = FailedMessageInfo(message_type="OrderPlaced", source_queue="q")
    sqs.receive_message.side_effect = [
        {"Messages": [_record(info, "rh-1"), _sqs_message("junk", "rh-2")]},
        {"Messages": []},
    ]
    service = AwsDeadLetterService(mock_connection)

    (listed,) = await service.list_dead_letter_messages("q-dlq")

    assert listed.message_id == info.message_id
    released = [
        c.kwargs["ReceiptHandle"]
        for c in sqs.change_message_visibility.call_args_list
    ]
    assert sorted(released) == ["rh-1", "rh-2"]
    sqs.delete_message.assert_not_called()


@pytest.mark.asyncio
async def test_dead_letter_reprocess_sends_to_source_and_deletes(
    mock_connection: MagicMock, sqs: MagicMock
) -> None:
    other = FailedMessageInfo(message_type="X", source_queue="q")
    info = FailedMessageInfo(
        message_type="OrderPlaced",
        original_message='{"order_id": "1"}',
        source_queue="billing.order_placed",
        attempt_count=4,
        correlation_id="corr",
    )
    sqs.get_queue_attributes.return_value = {
        "Attributes": {"ApproximateNumberOfMessages": "2"}
    }
    sqs.receive_message.side_effect = [
        {"Messages": [_record(other, "rh-other"), _record(info, "rh-target")]},
        {"Messages": []},
    ]
    service = AwsDeadLetterService(mock_connection)

    assert await service.reprocess_dead_letter_message("q-dlq", info.message_id)

    kwargs = sqs.send_message.call_args.kwargs
    assert kwargs["QueueUrl"].endswith("/billing.order_placed")
    body = json.loads(kwargs["MessageBody"])
    assert body["attempt_count"] == 1
    assert body["correlation_id"] == "corr"
    assert body["headers"]["original-message-id"] == info.message_id
    sqs.delete_message.assert_awaited_once_with(
        QueueUrl=_queue_url("q-dlq"), ReceiptHandle="rh-target"
    )
    sqs.change_message_visibility.assert_awaited_once_with(
        QueueUrl=_queue_url("q-dlq"), ReceiptHandle="rh-other", VisibilityTimeout=0
    )


@pytest.mark.asyncio
async def test_dead_letter_reprocess_corrupt_payload_releases_record(
    mock_connection: MagicMock, sqs: MagicMock
) -> None:
    info = FailedMessageInfo(
        message_type="OrderPlaced", original_message="not json", source_queue="q"
    )
    sqs.get_queue_attributes.return_value = {
        "Attributes": {"ApproximateNumberOfMessages": "1"}
    }
    sqs.receive_message.side_effect = [
        {"Messages": [_record(info, "rh-target")]},
        {"Messages": []},
    ]
    service = AwsDeadLetterService(mock_connection)

    with pytest.raises(DeadLetterOperationError):
        await service.reprocess_dead_letter_message("q-dlq", info.message_id)

    sqs.send_message.assert_not_called()
    sqs.delete_message.assert_not_called()
    sqs.change_message_visibility.assert_awaited_once_with(
        QueueUrl=_queue_url("q-dlq"), ReceiptHandle="rh-target", VisibilityTimeout=0
    )


@pytest.mark.asyncio
async def test_dead_letter_reprocess_unknown_id(
    mock_connection: MagicMock, sqs: MagicMock
) -> None:
    service = AwsDeadLetterService(mock_connection)
    assert not await service.reprocess_dead_letter_message("q-dlq", "missing")
    sqs.send_message.assert_not_called()


@pytest.mark.asyncio
async def test_dead_letter_purge_deletes_record(
    mock_connection: MagicMock, sqs: MagicMock
) -> None:
    info = FailedMessageInfo(message_type="OrderPlaced", source_queue="q")
    sqs.receive_message.side_effect = [
        {"Messages": [_record(info, "rh-1")]},
        {"Messages": []},
    ]
    service = AwsDeadLetterService(mock_connection)
    assert await service.purge_dead_letter_message("q-dlq", info.message_id)
    sqs.delete_message.assert_awaited_once_with(
        QueueUrl=_queue_url("q-dlq"), ReceiptHandle="rh-1"
    )


@pytest.mark.asyncio
async def test_dead_letter_statistics_only_counts_dead_letter_queues(
    mock_connection: MagicMock, sqs: MagicMock
) -> None:
    mock_connection.list_queue_urls.return_value = [
        _queue_url("billing.order_placed"),
        _queue_url("billing.order_placed-dlq"),
    ]
    sqs.get_queue_attributes.return_value = {
        "Attributes": {"ApproximateNumberOfMessages": "1"}
    }
    info = FailedMessageInfo(message_type="OrderPlaced", source_queue="q")
    sqs.receive_message.side_effect = [{"Messages": [_record(info, "rh-1")]}]
    service = AwsDeadLetterService(mock_connection)

    stats = await service.get_dead_letter_statistics()

    assert stats.total_dead_lettered == 1
    assert stats.by_queue == {"billing.order_placed-dlq": 1}
    assert stats.by_message_type == {"OrderPlaced": 1}


@pytest.mark.asyncio
async def test_dead_letter_connect_opens_sqs_client(
    mock_connection: MagicMock,
) -> None:
    await AwsDeadLetterService(mock_connection).connect()
    mock_connection.get_client.assert_awaited_once_with("sqs")


# -- classification ----------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (_client_error("ThrottlingException"), FailureKind.TRANSIENT),
        (_client_error("InternalError", 500), FailureKind.TRANSIENT),
        (_client_error("Unknown", 503), FailureKind.TRANSIENT),
        (_client_error("InvalidParameter"), FailureKind.PERMANENT),
        (_client_error("AuthorizationError", 403), FailureKind.PERMANENT),
        (EndpointConnectionError(endpoint_url="http://x"), FailureKind.TRANSIENT),
        (NoRegionError(), FailureKind.PERMANENT),
        (ValueError("unrelated"), None),
    ],
)
def test_classify_aws_error(
    error: BaseException, expected: FailureKind | None
) -> None:
    assert classify_aws_error(error) is expected
