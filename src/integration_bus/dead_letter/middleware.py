"""MessageRetryExecutor: run a handler with retry, backoff and dead-lettering."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..envelope import MessageEnvelope
    from ..ports import IDeadLetterService, MessageHandler

    RetryHook = Callable[[MessageEnvelope, float], Awaitable[None]]

logger = logging.getLogger("integration_bus.dead_letter.retry")


def handler_type_of(handler: object) -> str:
    """Qualified name of a handler, used in dead-letter records."""
    owner = getattr(handler, "__self__", None)
    if owner is not None:
        return f"{type(owner).__module__}.{type(owner).__qualname__}"
    module = getattr(handler, "__module__", None) or type(handler).__module__
    name = getattr(handler, "__qualname__", None) or type(handler).__qualname__
    return f"{module}.{name}"


class MessageRetryExecutor:
    """Drives one message through the delivery state machine.

    Pending → Delivered on success. A failure is retried after the policy's
    backoff while ``should_retry`` allows it; otherwise the message is
    dead-lettered. Cancellation propagates untouched.

    ``before_retry`` is awaited with the failed envelope and the backoff delay
    before each wait.
    """

    def __init__(
        self,
        dead_letter: IDeadLetterService,
        *,
        handler_type: str,
        source_queue: str,
    ) -> None:
        self._dead_letter = dead_letter
        self._handler_type = handler_type
        self._source_queue = source_queue

    async def execute(
        self,
        envelope: MessageEnvelope,
        handler: MessageHandler,
        *,
        before_retry: RetryHook | None = None,
    ) -> bool:
        """Return True if the handler succeeded, False if the message was
        dead-lettered."""
        current = envelope
        while True:
            try:
                logger.debug(
                    "Processing %s %s, attempt %d",
                    current.message_type,
                    current.message_id,
                    current.attempt_count,
                )
                await handler(current)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                return_value = await self._on_failure(current, e, before_retry)
                if return_value is not None:
                    return return_value
                current = current.next_attempt()
                continue
            if current.attempt_count > 1:
                logger.info(
                    "Message %s of type %s processed on attempt %d",
                    current.message_id,
                    current.message_type,
                    current.attempt_count,
                )
            return True

    async def _on_failure(
        self,
        envelope: MessageEnvelope,
        error: Exception,
        before_retry: RetryHook | None,
    ) -> bool | None:
        attempt = envelope.attempt_count
        logger.warning(
            "Failed to process %s %s on attempt %d: %s",
            envelope.message_type,
            envelope.message_id,
            attempt,
            error,
        )
        if not self._dead_letter.should_retry(error, attempt):
            logger.error(
                "Message %s of type %s failed after %d attempts; "
                "sending to dead letter queue",
                envelope.message_id,
                envelope.message_type,
                attempt,
            )
            await self._dead_letter.send_to_dead_letter(
                envelope, error, self._handler_type, self._source_queue, attempt
            )
            return False
        delay = self._dead_letter.calculate_retry_delay(attempt)
        logger.info(
            "Will retry %s %s in %.1fs (attempt %d)",
            envelope.message_type,
            envelope.message_id,
            delay,
            attempt,
        )
        if before_retry is not None:
            await before_retry(envelope, delay)
        if delay > 0:
            await asyncio.sleep(delay)
        return None
