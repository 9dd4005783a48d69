"""Pytest fixtures for integration bus tests."""

from __future__ import annotations

import pytest

from integration_bus.config import MessagingSettings
from integration_bus.dead_letter.memory import InMemoryDeadLetterService
from integration_bus.memory.bus import InMemoryMessageBus
from integration_bus.registry import EventTypeRegistry
from integration_bus.retry import RetryPolicy
from integration_bus.topics import TopicStrategy, TopicStrategySelector

from .sample_events import (
    DocumentVerified,
    OrderCancelled,
    OrderPlaced,
    ProviderVerificationStatusUpdated,
    UserRegistered,
)


@pytest.fixture
def registry() -> EventTypeRegistry:
    reg = EventTypeRegistry()
    reg.register_module("orders", [OrderPlaced, OrderCancelled])
    reg.register_module("documents", [DocumentVerified])
    reg.register_module("providers", [ProviderVerificationStatusUpdated])
    reg.register_module("users", [UserRegistered])
    reg.freeze()
    return reg


@pytest.fixture
def selector(registry: EventTypeRegistry) -> TopicStrategySelector:
    return TopicStrategySelector(
        registry,
        strategy=TopicStrategy.SINGLE_WITH_FILTERS,
        default_topic="app-events",
    )


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Default attempt limit without waiting between retries."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def dead_letter(fast_policy: RetryPolicy) -> InMemoryDeadLetterService:
    return InMemoryDeadLetterService(
        retry_policy=fast_policy, environment_name="Testing"
    )


@pytest.fixture
def memory_bus(
    registry: EventTypeRegistry,
    selector: TopicStrategySelector,
    dead_letter: InMemoryDeadLetterService,
) -> InMemoryMessageBus:
    bus = InMemoryMessageBus(
        registry=registry,
        selector=selector,
        dead_letter=dead_letter,
        service_name="billing",
    )
    dead_letter.bind_requeue(bus.requeue)
    return bus


@pytest.fixture
def make_settings():
    """Build settings without reading a .env file."""

    def _make(**overrides: object) -> MessagingSettings:
        return MessagingSettings(_env_file=None, **overrides)

    return _make
