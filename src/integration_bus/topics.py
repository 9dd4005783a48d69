"""TopicStrategySelector: resolve the physical topic for an event type."""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any

from .exceptions import ConfigurationError, UnknownMessageTypeError
from .registry import SHARED_MODULE

if TYPE_CHECKING:
    from .config import MessagingSettings
    from .registry import EventTypeRegistration, EventTypeRegistry

logger = logging.getLogger("integration_bus.topics")


class TopicStrategy(str, enum.Enum):
    """How event types map onto physical topics. One per deployment."""

    SINGLE_WITH_FILTERS = "single_with_filters"
    MULTIPLE_BY_DOMAIN = "multiple_by_domain"
    HYBRID = "hybrid"


class TopicStrategySelector:
    """Pure function of configuration plus the frozen event type registry.

    * ``SINGLE_WITH_FILTERS``: every event goes to ``default_topic``;
      subscribers filter by message type.
    * ``MULTIPLE_BY_DOMAIN``: one topic per owning module, either from
      ``domain_topics`` or ``f"{domain_topic_prefix}{module}"``. Events of
      the ``shared`` module stay on ``default_topic``.
    * ``HYBRID``: event types listed in ``dedicated_topics`` (or stamped with
      ``@dedicated_topic``) get their own topic; the rest use
      ``default_topic``.
    """

    def __init__(
        self,
        registry: EventTypeRegistry,
        *,
        strategy: TopicStrategy = TopicStrategy.SINGLE_WITH_FILTERS,
        default_topic: str,
        domain_topics: dict[str, str] | None = None,
        dedicated_topics: dict[str, str] | None = None,
        domain_topic_prefix: str = "",
    ) -> None:
        if not default_topic:
            raise ConfigurationError("default_topic must be configured")
        self._registry = registry
        self._strategy = TopicStrategy(strategy)
        self._default_topic = default_topic
        self._domain_topics = {k.lower(): v for k, v in (domain_topics or {}).items()}
        self._dedicated_topics = dict(dedicated_topics or {})
        self._domain_topic_prefix = domain_topic_prefix

    @classmethod
    def from_settings(
        cls,
        registry: EventTypeRegistry,
        settings: MessagingSettings,
    ) -> TopicStrategySelector:
        topics = settings.topics
        return cls(
            registry,
            strategy=topics.strategy,
            default_topic=settings.require_default_topic(),
            domain_topics=topics.domain_topics,
            dedicated_topics=topics.dedicated_topics,
            domain_topic_prefix=topics.domain_topic_prefix,
        )

    @property
    def strategy(self) -> TopicStrategy:
        return self._strategy

    @property
    def default_topic(self) -> str:
        return self._default_topic

    def select_topic_for_event(self, event_type: Any) -> str:
        """Return the topic for a registered event class, instance, or name.

        Raises ``ConfigurationError`` for types the registry does not know.
        """
        try:
            registration = self._registry.registration_for(event_type)
        except UnknownMessageTypeError as e:
            raise ConfigurationError(
                f"No topic can be resolved for unregistered event type "
                f"{e.message_type!r}"
            ) from e
        return self._topic_for(registration)

    def _topic_for(self, registration: EventTypeRegistration) -> str:
        if self._strategy is TopicStrategy.MULTIPLE_BY_DOMAIN:
            return self._domain_topic(registration.module)
        if self._strategy is TopicStrategy.HYBRID:
            dedicated = (
                self._dedicated_topics.get(registration.name) or registration.topic_hint
            )
            return dedicated or self._default_topic
        return self._default_topic

    def _domain_topic(self, module: str) -> str:
        configured = self._domain_topics.get(module)
        if configured:
            return configured
        if module == SHARED_MODULE:
            return self._default_topic
        return f"{self._domain_topic_prefix}{module}"

    def validate(self) -> None:
        """Resolve every registered type once; raise on the first failure."""
        unknown = set(self._dedicated_topics) - set(self._registry.list_registered())
        if unknown:
            raise ConfigurationError(
                f"Dedicated topics configured for unregistered event types: "
                f"{sorted(unknown)}"
            )
        for registration in self._registry.registrations():
            topic = self._topic_for(registration)
            if not topic:
                raise ConfigurationError(
                    f"Empty topic resolved for event type {registration.name!r}"
                )
        logger.info(
            "Topic strategy %s resolves %d event types onto %d topics",
            self._strategy.value,
            len(self._registry),
            len(self.all_topics()),
        )

    def all_topics(self) -> set[str]:
        """Every topic the registered event types resolve to."""
        topics = {self._topic_for(r) for r in self._registry.registrations()}
        topics.add(self._default_topic)
        return topics
