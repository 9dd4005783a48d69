"""NoOpDeadLetterService: used when messaging runs without a real store."""

from __future__ import annotations

import logging

from .base import BaseDeadLetterService
from .models import DeadLetterStatistics, FailedMessageInfo

logger = logging.getLogger("integration_bus.dead_letter.noop")


class NoOpDeadLetterService(BaseDeadLetterService):
    """Keeps the retry decisions of the policy but stores nothing."""

    async def _store(self, dlq_name: str, info: FailedMessageInfo) -> None:
        logger.debug(
            "NoOp dead letter: dropping message %s of type %s for %s",
            info.message_id,
            info.message_type,
            dlq_name,
        )

    async def _list(self, queue_name: str, max_count: int) -> list[FailedMessageInfo]:
        return []

    async def _reprocess(self, queue_name: str, message_id: str) -> bool:
        return False

    async def _purge(self, queue_name: str, message_id: str) -> bool:
        return False

    async def _statistics(self) -> DeadLetterStatistics:
        return DeadLetterStatistics()
