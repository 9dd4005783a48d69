"""EventTypeRegistry: the closed set of integration event types."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from .exceptions import (
    ConfigurationError,
    MessagingSerializationError,
    UnknownMessageTypeError,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .events import IntegrationEvent

logger = logging.getLogger("integration_bus.registry")

SHARED_MODULE = "shared"


@dataclass(frozen=True)
class EventTypeRegistration:
    """One registered event type and its routing metadata."""

    event_class: type[IntegrationEvent]
    name: str
    module: str
    topic_hint: str | None = None
    critical: bool = False


def module_of(event_class: type[Any]) -> str:
    """Derive the owning module from the class's Python module path.

    ``app.modules.documents.events`` -> ``documents``. Classes outside a
    ``modules`` package belong to the ``shared`` module.
    """
    parts = event_class.__module__.split(".")
    if "modules" in parts:
        index = parts.index("modules")
        if index + 1 < len(parts):
            return parts[index + 1].lower()
    return SHARED_MODULE


class EventTypeRegistry:
    """Registry mapping ``event_type_name: str`` → registration.

    Built once by the composition root: every module declares its event
    types, then ``freeze()`` makes the registry read-only for the lifetime
    of the process.

    Usage::

        registry = EventTypeRegistry()
        registry.register_module("documents", [DocumentVerified, DocumentRejected])
        registry.register(OrderPlaced)
        registry.freeze()
    """

    def __init__(self) -> None:
        self._registrations: dict[str, EventTypeRegistration] = {}
        self._by_class: dict[type[Any], str] = {}
        self._frozen = False

    def register(
        self,
        event_class: type[IntegrationEvent],
        *,
        name: str | None = None,
        module: str | None = None,
        topic_hint: str | None = None,
        critical: bool | None = None,
    ) -> EventTypeRegistration:
        """Register *event_class*; re-registering the same class is a no-op."""
        if self._frozen:
            raise ConfigurationError(
                f"Cannot register {event_class.__name__}: registry is frozen"
            )
        key = name or event_class.__name__
        registration = EventTypeRegistration(
            event_class=event_class,
            name=key,
            module=(module or module_of(event_class)).lower(),
            topic_hint=topic_hint or getattr(event_class, "__topic_hint__", None),
            critical=bool(
                critical
                if critical is not None
                else getattr(event_class, "__critical__", False)
            ),
        )
        existing = self._registrations.get(key)
        if existing is not None:
            if existing.event_class is not event_class:
                raise ConfigurationError(
                    f"Event type name {key!r} is already registered for "
                    f"{existing.event_class.__module__}.{existing.event_class.__name__}"
                )
            return existing
        self._registrations[key] = registration
        self._by_class[event_class] = key
        logger.debug("Registered event type %s (module=%s)", key, registration.module)
        return registration

    def register_module(
        self,
        module: str,
        event_classes: Iterable[type[IntegrationEvent]],
    ) -> None:
        """Register every event type a module declares."""
        for event_class in event_classes:
            self.register(event_class, module=module)

    def freeze(self) -> None:
        """Disallow further registration."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, event_type: str) -> type[IntegrationEvent] | None:
        """Look up an event class by type name."""
        registration = self._registrations.get(event_type)
        return registration.event_class if registration else None

    def has(self, event_type: str) -> bool:
        """Return ``True`` if *event_type* is registered."""
        return event_type in self._registrations

    def registration_for(self, event_type: Any) -> EventTypeRegistration:
        """Return the registration for a class, instance, or type name."""
        name = self.name_of(event_type)
        registration = self._registrations.get(name)
        if registration is None:
            raise UnknownMessageTypeError(name)
        if not isinstance(event_type, str):
            cls = event_type if isinstance(event_type, type) else type(event_type)
            if not issubclass(cls, registration.event_class):
                raise UnknownMessageTypeError(f"{cls.__module__}.{cls.__name__}")
        return registration

    def name_of(self, event_type: Any) -> str:
        """Registered name of a class, instance, or name."""
        if isinstance(event_type, str):
            return event_type
        cls = event_type if isinstance(event_type, type) else type(event_type)
        registered = self._by_class.get(cls)
        if registered is not None:
            return registered
        if isinstance(event_type, type):
            return event_type.__name__
        return str(getattr(event_type, "event_type", type(event_type).__name__))

    def hydrate(self, event_type: str, data: Any) -> IntegrationEvent:
        """Reconstruct an integration event from its type name and payload."""
        event_class = self.get(event_type)
        if event_class is None:
            raise UnknownMessageTypeError(event_type)
        if isinstance(data, event_class):
            return data
        try:
            return event_class.model_validate(data)
        except ValidationError as e:
            raise MessagingSerializationError(
                f"Payload does not match {event_type}: {e}"
            ) from e

    def list_registered(self) -> list[str]:
        """Return all registered event type names."""
        return list(self._registrations.keys())

    def registrations(self) -> list[EventTypeRegistration]:
        return list(self._registrations.values())

    def modules(self) -> set[str]:
        return {r.module for r in self._registrations.values()}

    def __len__(self) -> int:
        return len(self._registrations)

    def __contains__(self, event_type: object) -> bool:
        return self.has(self.name_of(event_type))
