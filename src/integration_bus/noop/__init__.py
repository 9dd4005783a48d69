"""No-op transport: accepts every call and performs no I/O."""

from __future__ import annotations

from ..dead_letter.noop import NoOpDeadLetterService
from .bus import NoOpMessageBus

__all__ = ["NoOpDeadLetterService", "NoOpMessageBus"]
