"""NoOpMessageBus: for disabled messaging and isolated tests."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..ports import MessageHandler

logger = logging.getLogger("integration_bus.noop")


class NoOpMessageBus:
    """Accepts send, publish and subscribe and returns successfully.

    Nothing is delivered. Each call yields to the event loop once, so a
    cancelled caller still sees ``CancelledError``.
    """

    transport_name = "noop"

    async def connect(self) -> None:
        return None

    async def send(
        self,
        message: Any,
        destination_queue: str | None = None,
        **kwargs: Any,
    ) -> None:
        await asyncio.sleep(0)
        logger.debug(
            "NoOp send of %s to %s", type(message).__name__, destination_queue
        )

    async def publish(
        self,
        event: Any,
        topic_override: str | None = None,
        **kwargs: Any,
    ) -> None:
        await asyncio.sleep(0)
        logger.debug("NoOp publish of %s to %s", type(event).__name__, topic_override)

    async def subscribe(
        self,
        event_type: type[Any],
        handler: MessageHandler,
        subscription_name: str | None = None,
    ) -> None:
        await asyncio.sleep(0)
        logger.debug(
            "NoOp subscribe of %s for %s",
            getattr(event_type, "__name__", event_type),
            subscription_name,
        )

    async def close(self) -> None:
        return None

    async def health_check(self) -> bool:
        return True
