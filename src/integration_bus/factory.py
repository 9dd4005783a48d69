"""Transport selection: pick and build the message bus and dead-letter service.

Decision table (bus and dead-letter service alike)::

    Testing                          -> NoOp
    Development, RabbitMQ enabled    -> RabbitMQ (NoOp with a warning if it fails)
    Development, RabbitMQ disabled   -> NoOp
    Production / anything else       -> AWS
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .aws.bus import AwsMessageBus
from .aws.connection import AwsConnectionManager
from .aws.dead_letter import AwsDeadLetterService
from .aws.errors import classify_aws_error
from .classification import FailureClassifier
from .config import MessagingSettings
from .dead_letter.noop import NoOpDeadLetterService
from .noop.bus import NoOpMessageBus
from .rabbitmq.bus import RabbitMQMessageBus
from .rabbitmq.connection import RabbitMQConnectionManager
from .rabbitmq.dead_letter import RabbitMQDeadLetterService
from .rabbitmq.errors import classify_amqp_error
from .retry import RetryPolicy
from .topics import TopicStrategySelector

if TYPE_CHECKING:
    from .ports import IDeadLetterService, IMessageBus
    from .registry import EventTypeRegistry

logger = logging.getLogger("integration_bus.factory")

TESTING = "testing"
DEVELOPMENT = "development"
PRODUCTION = "production"

T = TypeVar("T")


class TransportKind(str, enum.Enum):
    RABBITMQ = "rabbitmq"
    AWS = "aws"
    NOOP = "noop"


def normalize_environment(environment: str | None) -> str:
    return (environment or "").strip().lower()


def is_testing(environment: str | None) -> bool:
    return normalize_environment(environment) == TESTING


def is_development(environment: str | None) -> bool:
    return normalize_environment(environment) == DEVELOPMENT


def select_transport(
    environment: str | None,
    rabbitmq_enabled: bool | None = None,
) -> TransportKind:
    """Pure decision table; ``rabbitmq_enabled=None`` means not set."""
    if is_testing(environment):
        return TransportKind.NOOP
    if is_development(environment):
        if rabbitmq_enabled is False:
            return TransportKind.NOOP
        return TransportKind.RABBITMQ
    return TransportKind.AWS


def select_dead_letter_transport(
    environment: str | None,
    rabbitmq_enabled: bool | None = None,
) -> TransportKind:
    """Same table for the dead-letter store: Testing never stores, Production
    always uses the broker-native store."""
    return select_transport(environment, rabbitmq_enabled)


def default_classifier() -> FailureClassifier:
    """Default rules plus the rules of both broker client libraries."""
    return FailureClassifier(classify_amqp_error, classify_aws_error)


class _TransportFactory(Generic[T]):
    """Select a transport once per process and memoise the built instance."""

    kind_name = "transport"

    def __init__(
        self,
        settings: MessagingSettings,
        providers: Mapping[TransportKind, Callable[[], T]],
    ) -> None:
        self._settings = settings
        self._providers = providers
        self._instance: T | None = None
        self._transport: TransportKind | None = None
        self._lock = asyncio.Lock()

    @property
    def transport(self) -> TransportKind | None:
        """Transport actually built (after any fallback)."""
        return self._transport

    def select(self) -> TransportKind:
        if not self._settings.enabled:
            return TransportKind.NOOP
        return select_transport(
            self._settings.environment, self._settings.rabbitmq.enabled
        )

    async def create(self) -> T:
        async with self._lock:
            if self._instance is None:
                self._instance = await self._build()
            return self._instance

    async def _build(self) -> T:
        kind = self.select()
        try:
            self._settings.validate_for(kind)
            instance = self._providers[kind]()
            await self._start(instance)
        except Exception as e:
            if kind is not TransportKind.RABBITMQ or not is_development(
                self._settings.environment
            ):
                logger.error(
                    "Failed to create %s %s: %s", kind.value, self.kind_name, e
                )
                raise
            logger.warning(
                "Failed to create RabbitMQ %s in Development, falling back to "
                "NoOp: %s",
                self.kind_name,
                e,
            )
            kind = TransportKind.NOOP
            instance = self._providers[kind]()
        self._transport = kind
        logger.info(
            "Using %s %s for environment %s",
            kind.value,
            self.kind_name,
            self._settings.environment,
        )
        return instance

    async def _start(self, instance: T) -> None:
        connect = getattr(instance, "connect", None)
        if connect is not None:
            await connect()


class DeadLetterServiceFactory(_TransportFactory["IDeadLetterService"]):
    kind_name = "dead letter service"

    def __init__(
        self,
        settings: MessagingSettings,
        *,
        retry_policy: RetryPolicy | None = None,
        providers: Mapping[TransportKind, Callable[[], IDeadLetterService]]
        | None = None,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy.from_settings(
            settings, default_classifier()
        )
        super().__init__(settings, providers or self._default_providers())

    def select(self) -> TransportKind:
        if not self._settings.enabled:
            return TransportKind.NOOP
        return select_dead_letter_transport(
            self._settings.environment, self._settings.rabbitmq.enabled
        )

    def _default_providers(
        self,
    ) -> dict[TransportKind, Callable[[], IDeadLetterService]]:
        return {
            TransportKind.RABBITMQ: self._rabbitmq,
            TransportKind.AWS: self._aws,
            TransportKind.NOOP: self._noop,
        }

    def _common(self) -> dict[str, Any]:
        return {
            "retry_policy": self.retry_policy,
            "environment_name": self._settings.environment,
            "application_version": self._settings.application_version,
            "enable_admin_notifications": (
                self._settings.dead_letter.enable_admin_notifications
            ),
        }

    def _rabbitmq(self) -> IDeadLetterService:
        rabbitmq = self._settings.rabbitmq
        return RabbitMQDeadLetterService(
            RabbitMQConnectionManager(self._settings.require_rabbitmq()),
            exchange_name=rabbitmq.dead_letter_exchange,
            queue_prefix=rabbitmq.dead_letter_queue_prefix,
            ttl_hours=rabbitmq.dead_letter_ttl_hours,
            **self._common(),
        )

    def _aws(self) -> IDeadLetterService:
        aws = self._settings.aws
        return AwsDeadLetterService(
            AwsConnectionManager(self._settings.require_aws(), **aws.client_kwargs()),
            queue_suffix=aws.dead_letter_queue_suffix,
            ttl_hours=aws.dead_letter_ttl_hours,
            **self._common(),
        )

    def _noop(self) -> IDeadLetterService:
        return NoOpDeadLetterService(**self._common())


class MessageBusFactory(_TransportFactory["IMessageBus"]):
    kind_name = "message bus"

    def __init__(
        self,
        settings: MessagingSettings,
        registry: EventTypeRegistry,
        providers: Mapping[TransportKind, Callable[[], IMessageBus]] | None = None,
        *,
        dead_letter: IDeadLetterService | None = None,
        selector: TopicStrategySelector | None = None,
        classifier: FailureClassifier | None = None,
    ) -> None:
        self._registry = registry
        self.classifier = classifier or default_classifier()
        self.selector = selector or TopicStrategySelector.from_settings(
            registry, settings
        )
        self.dead_letter = dead_letter or NoOpDeadLetterService(
            retry_policy=RetryPolicy.from_settings(settings, self.classifier),
            environment_name=settings.environment,
        )
        super().__init__(settings, providers or self._default_providers())

    def _default_providers(self) -> dict[TransportKind, Callable[[], IMessageBus]]:
        return {
            TransportKind.RABBITMQ: self._rabbitmq,
            TransportKind.AWS: self._aws,
            TransportKind.NOOP: NoOpMessageBus,
        }

    def _common(self) -> dict[str, Any]:
        return {
            "registry": self._registry,
            "selector": self.selector,
            "dead_letter": self.dead_letter,
            "classifier": self.classifier,
            "service_name": self._settings.service_name,
            "max_concurrent_calls": self._settings.max_concurrent_calls,
        }

    def _rabbitmq(self) -> IMessageBus:
        rabbitmq = self._settings.rabbitmq
        return RabbitMQMessageBus(
            RabbitMQConnectionManager(self._settings.require_rabbitmq()),
            domain_queues=rabbitmq.domain_queues,
            prefetch_count=rabbitmq.prefetch_count,
            persistent=rabbitmq.persistent,
            **self._common(),
        )

    def _aws(self) -> IMessageBus:
        aws = self._settings.aws
        return AwsMessageBus(
            AwsConnectionManager(self._settings.require_aws(), **aws.client_kwargs()),
            wait_time_seconds=aws.wait_time_seconds,
            visibility_timeout=aws.visibility_timeout,
            **self._common(),
        )


@dataclass
class Messaging:
    """Everything the composition root wires up for messaging."""

    bus: IMessageBus
    dead_letter: IDeadLetterService
    selector: TopicStrategySelector
    retry_policy: RetryPolicy
    transport: TransportKind | None
    dead_letter_transport: TransportKind | None

    async def close(self) -> None:
        await self.bus.close()
        await self.dead_letter.close()

    async def health_check(self) -> dict[str, bool]:
        return {
            "message_bus": await self.bus.health_check(),
            "dead_letter": await self.dead_letter.health_check(),
        }


async def create_messaging(
    settings: MessagingSettings | None,
    registry: EventTypeRegistry,
) -> Messaging:
    """Freeze the registry, validate routing, and build bus plus dead-letter
    service for the configured environment."""
    settings = settings or MessagingSettings()
    registry.freeze()
    selector = TopicStrategySelector.from_settings(registry, settings)
    selector.validate()
    classifier = default_classifier()
    retry_policy = RetryPolicy.from_settings(settings, classifier)

    dead_letter_factory = DeadLetterServiceFactory(settings, retry_policy=retry_policy)
    dead_letter = await dead_letter_factory.create()
    bus_factory = MessageBusFactory(
        settings,
        registry,
        dead_letter=dead_letter,
        selector=selector,
        classifier=classifier,
    )
    bus = await bus_factory.create()
    return Messaging(
        bus=bus,
        dead_letter=dead_letter,
        selector=selector,
        retry_policy=retry_policy,
        transport=bus_factory.transport,
        dead_letter_transport=dead_letter_factory.transport,
    )
