"""InMemoryDeadLetterService: process-local dead-letter store for tests."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from .base import BaseDeadLetterService
from .models import DeadLetterStatistics

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from ..envelope import MessageEnvelope
    from .models import FailedMessageInfo

    Requeue = Callable[[str, MessageEnvelope], Coroutine[Any, Any, None]]


class InMemoryDeadLetterService(BaseDeadLetterService):
    """Keeps dead-lettered records in a dict keyed by dead-letter queue name.

    ``requeue`` is awaited with ``(source_queue, envelope)`` when a message is
    reprocessed; ``InMemoryMessageBus.requeue`` fits. A reprocessed record
    leaves the store, so a second reprocess of the same id is a no-op.
    """

    def __init__(
        self,
        requeue: Requeue | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._requeue = requeue
        self._queues: dict[str, dict[str, FailedMessageInfo]] = {}
        self._lock = asyncio.Lock()

    def bind_requeue(self, requeue: Requeue) -> None:
        self._requeue = requeue

    async def _store(self, dlq_name: str, info: FailedMessageInfo) -> None:
        async with self._lock:
            self._queues.setdefault(dlq_name, {})[info.message_id] = info

    async def _list(self, queue_name: str, max_count: int) -> list[FailedMessageInfo]:
        async with self._lock:
            records = list(self._queues.get(queue_name, {}).values())
        return records[:max_count]

    async def _reprocess(self, queue_name: str, message_id: str) -> bool:
        async with self._lock:
            info = self._queues.get(queue_name, {}).pop(message_id, None)
            if info is None:
                return False
        envelope = self.reprocessed_envelope(info)
        if self._requeue is not None:
            try:
                await self._requeue(info.source_queue, envelope)
            except Exception:
                # Put the record back so the operator can try again.
                async with self._lock:
                    self._queues.setdefault(queue_name, {})[message_id] = info
                raise
        return True

    async def _purge(self, queue_name: str, message_id: str) -> bool:
        async with self._lock:
            return self._queues.get(queue_name, {}).pop(message_id, None) is not None

    async def _statistics(self) -> DeadLetterStatistics:
        async with self._lock:
            records = [r for queue in self._queues.values() for r in queue.values()]
            by_queue = {name: len(q) for name, q in self._queues.items() if q}
        return DeadLetterStatistics.from_records(records, by_queue=by_queue)

    def queue_names(self) -> list[str]:
        return [name for name, queue in self._queues.items() if queue]

    def clear(self) -> None:
        """Drop all records (for test teardown)."""
        self._queues.clear()
