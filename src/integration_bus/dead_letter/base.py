"""Behavior shared by every dead-letter service implementation."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from ..envelope import MessageEnvelope
from ..exceptions import DeadLetterOperationError, MessagingSerializationError
from ..retry import RetryPolicy
from ..serialization import dumps_payload
from .models import (
    DeadLetterStatistics,
    EnvironmentMetadata,
    FailedMessageInfo,
    FailureAttempt,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger("integration_bus.dead_letter")


class BaseDeadLetterService:
    """Retry decisions, failed-message records, and error reporting.

    Subclasses implement ``_store``, ``_list``, ``_reprocess``, ``_purge``
    and ``_statistics`` against their store; this class wraps them so that
    operational failures surface as ``DeadLetterOperationError``.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        environment_name: str = "",
        application_version: str = "",
        enable_admin_notifications: bool = False,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._environment_name = environment_name
        self._application_version = application_version
        self._enable_admin_notifications = enable_admin_notifications

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def should_retry(self, exception: BaseException, attempt_count: int) -> bool:
        return self._retry_policy.should_retry(exception, attempt_count)

    def calculate_retry_delay(self, attempt_count: int) -> float:
        return self._retry_policy.calculate_retry_delay(attempt_count)

    def dead_letter_queue_name(self, source_queue: str) -> str:
        return f"{source_queue}.dlq"

    def create_failed_message_info(
        self,
        message: Any,
        exception: BaseException,
        handler_type: str,
        source_queue: str,
        attempt_count: int,
    ) -> FailedMessageInfo:
        """Build the dead-letter record for *message*."""
        envelope = message if isinstance(message, MessageEnvelope) else None
        payload = envelope.payload if envelope is not None else message
        message_type = (
            envelope.message_type
            if envelope is not None
            else getattr(message, "event_type", type(message).__name__)
        )
        now = datetime.now(timezone.utc)
        # The first failure time is not tracked across redeliveries; estimate
        # it from the backoff schedule.
        elapsed = sum(
            self.calculate_retry_delay(n) for n in range(1, max(attempt_count, 1))
        )
        history = [
            FailureAttempt.from_exception(exception, attempt_count, handler_type)
        ]
        return FailedMessageInfo(
            message_type=str(message_type),
            original_message=dumps_payload(payload),
            source_queue=source_queue,
            failure_reason=str(exception) or type(exception).__name__,
            failure_kind=self._retry_policy.classify(exception),
            attempt_count=max(attempt_count, 1),
            first_failed_at=now - timedelta(seconds=elapsed),
            last_failed_at=now,
            handler_type=handler_type,
            correlation_id=envelope.correlation_id if envelope is not None else None,
            failure_history=history,
            headers=dict(envelope.headers) if envelope is not None else {},
            environment=EnvironmentMetadata(
                environment_name=self._environment_name,
                application_version=self._application_version,
                service_instance=f"{os.getpid()}",
            ),
        )

    @staticmethod
    def reprocessed_envelope(info: FailedMessageInfo) -> MessageEnvelope:
        """Rebuild the original message as a fresh first delivery attempt."""
        try:
            payload = (
                json.loads(info.original_message) if info.original_message else None
            )
        except json.JSONDecodeError as e:
            raise MessagingSerializationError(
                f"Dead-letter record {info.message_id} has an unreadable payload"
            ) from e
        headers = {
            **info.headers,
            "reprocessed-from-dlq": "true",
            "original-message-id": info.message_id,
            "reprocessed-at": datetime.now(timezone.utc).isoformat(),
        }
        fields: dict[str, Any] = {
            "message_type": info.message_type,
            "payload": payload,
            "attempt_count": 1,
            "headers": headers,
        }
        if info.correlation_id:
            fields["correlation_id"] = info.correlation_id
        return MessageEnvelope(**fields)

    async def send_to_dead_letter(
        self,
        message: Any,
        exception: BaseException,
        handler_type: str,
        source_queue: str,
        attempt_count: int,
    ) -> FailedMessageInfo | None:
        info = self.create_failed_message_info(
            message, exception, handler_type, source_queue, attempt_count
        )
        dlq_name = self.dead_letter_queue_name(source_queue)
        try:
            await self._store(dlq_name, info)
        except Exception as e:
            logger.error(
                "Failed to send message to dead letter queue %s. "
                "Original exception: %s",
                dlq_name,
                exception,
                exc_info=True,
            )
            raise DeadLetterOperationError(
                f"Could not dead-letter message of type {info.message_type}: {e}",
                queue_name=dlq_name,
                message_id=info.message_id,
            ) from e
        logger.warning(
            "Message sent to dead letter queue. MessageId: %s, Type: %s, "
            "Queue: %s, Attempts: %d, Kind: %s, Reason: %s",
            info.message_id,
            info.message_type,
            dlq_name,
            info.attempt_count,
            info.failure_kind.value,
            info.failure_reason,
        )
        if self._enable_admin_notifications:
            self._notify_administrators(info)
        return info

    async def list_dead_letter_messages(
        self,
        queue_name: str,
        max_count: int = 50,
    ) -> list[FailedMessageInfo]:
        if max_count <= 0:
            return []
        return await self._operation(
            "list dead letter messages from",
            queue_name,
            None,
            lambda: self._list(queue_name, max_count),
        )

    async def reprocess_dead_letter_message(
        self,
        queue_name: str,
        message_id: str,
    ) -> bool:
        done = await self._operation(
            "reprocess dead letter message in",
            queue_name,
            message_id,
            lambda: self._reprocess(queue_name, message_id),
        )
        if done:
            logger.info(
                "Message %s reprocessed from dead letter queue %s",
                message_id,
                queue_name,
            )
        else:
            logger.info(
                "Nothing to reprocess for message %s in %s", message_id, queue_name
            )
        return done

    async def purge_dead_letter_message(
        self,
        queue_name: str,
        message_id: str,
    ) -> bool:
        done = await self._operation(
            "purge dead letter message from",
            queue_name,
            message_id,
            lambda: self._purge(queue_name, message_id),
        )
        if done:
            logger.info(
                "Dead letter message %s purged from queue %s", message_id, queue_name
            )
        return done

    async def get_dead_letter_statistics(self) -> DeadLetterStatistics:
        return await self._operation(
            "get dead letter statistics for", "*", None, self._statistics
        )

    async def _operation(
        self,
        action: str,
        queue_name: str,
        message_id: str | None,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        try:
            return await call()
        except DeadLetterOperationError:
            raise
        except Exception as e:
            logger.error(
                "Failed to %s queue %s (message %s)",
                action,
                queue_name,
                message_id,
                exc_info=True,
            )
            raise DeadLetterOperationError(
                f"Failed to {action} queue {queue_name}: {e}",
                queue_name=queue_name,
                message_id=message_id,
            ) from e

    def _notify_administrators(self, info: FailedMessageInfo) -> None:
        logger.warning(
            "Admin notification: message %s of type %s failed %d times and was "
            "sent to the dead letter queue",
            info.message_id,
            info.message_type,
            info.attempt_count,
        )

    async def _store(self, dlq_name: str, info: FailedMessageInfo) -> None:
        raise NotImplementedError

    async def _list(self, queue_name: str, max_count: int) -> list[FailedMessageInfo]:
        raise NotImplementedError

    async def _reprocess(self, queue_name: str, message_id: str) -> bool:
        raise NotImplementedError

    async def _purge(self, queue_name: str, message_id: str) -> bool:
        raise NotImplementedError

    async def _statistics(self) -> DeadLetterStatistics:
        raise NotImplementedError

    async def connect(self) -> None:
        """Open store resources; called once by the factory."""
        return None

    async def close(self) -> None:
        return None

    async def health_check(self) -> bool:
        return True
