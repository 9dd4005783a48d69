from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from .dead_letter.models import DeadLetterStatistics, FailedMessageInfo
    from .envelope import MessageEnvelope

    MessageHandler = Callable[[MessageEnvelope], Coroutine[Any, Any, None]]


@runtime_checkable
class IMessageBus(Protocol):
    """
    Port used by every module to exchange integration events.

    Adapters: RabbitMQ, AWS (SNS + SQS), no-op and in-memory.
    Delivery is at-least-once; no ordering across event types.
    """

    async def send(
        self,
        message: Any,
        destination_queue: str | None = None,
        **kwargs: Any,
    ) -> None:
        """
        Point-to-point delivery of *message* to a queue.

        Args:
            message: Integration event, dict, or ``MessageEnvelope``.
            destination_queue: Queue name; derived from the message type if omitted.
            **kwargs: ``correlation_id``, ``causation_id``, ``headers``.

        Raises:
            TransportError: The transport is unreachable or rejected the message.
        """
        ...

    async def publish(
        self,
        event: Any,
        topic_override: str | None = None,
        **kwargs: Any,
    ) -> None:
        """
        Broadcast *event* to its topic.

        The topic comes from the topic strategy selector unless
        *topic_override* is given.
        """
        ...

    async def subscribe(
        self,
        event_type: type[Any],
        handler: MessageHandler,
        subscription_name: str | None = None,
    ) -> None:
        """
        Register *handler* for *event_type*.

        Handler failures go through the retry policy and the dead-letter
        service; they are never raised to the caller of ``subscribe``.
        """
        ...

    async def close(self) -> None: ...

    async def health_check(self) -> bool: ...


@runtime_checkable
class IDeadLetterService(Protocol):
    """
    Port for the retry decision and the dead-letter store.

    The four operational methods are meant for operator tooling and raise
    ``DeadLetterOperationError`` on failure.
    """

    def should_retry(self, exception: BaseException, attempt_count: int) -> bool: ...

    def calculate_retry_delay(self, attempt_count: int) -> float: ...

    def dead_letter_queue_name(self, source_queue: str) -> str: ...

    async def send_to_dead_letter(
        self,
        message: Any,
        exception: BaseException,
        handler_type: str,
        source_queue: str,
        attempt_count: int,
    ) -> FailedMessageInfo | None:
        """Record a message that exhausted its retries or failed permanently."""
        ...

    async def list_dead_letter_messages(
        self,
        queue_name: str,
        max_count: int = 50,
    ) -> list[FailedMessageInfo]: ...

    async def reprocess_dead_letter_message(
        self,
        queue_name: str,
        message_id: str,
    ) -> bool:
        """Re-enqueue the original payload with attempt count reset to 1.

        Returns ``False`` when there is nothing to reprocess (unknown or
        already reprocessed id).
        """
        ...

    async def purge_dead_letter_message(
        self,
        queue_name: str,
        message_id: str,
    ) -> bool: ...

    async def get_dead_letter_statistics(self) -> DeadLetterStatistics: ...

    async def close(self) -> None: ...

    async def health_check(self) -> bool: ...
