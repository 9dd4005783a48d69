"""RabbitMQ transport adapter (development broker)."""

from __future__ import annotations

from .bus import RabbitMQMessageBus
from .connection import RabbitMQConnectionManager
from .dead_letter import RabbitMQDeadLetterService
from .errors import classify_amqp_error

__all__ = [
    "RabbitMQConnectionManager",
    "RabbitMQDeadLetterService",
    "RabbitMQMessageBus",
    "classify_amqp_error",
]
