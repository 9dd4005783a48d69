"""In-memory transport for tests."""

from __future__ import annotations

from ..dead_letter.memory import InMemoryDeadLetterService
from .bus import InMemoryMessageBus

__all__ = ["InMemoryDeadLetterService", "InMemoryMessageBus"]
