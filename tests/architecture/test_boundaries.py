from pytest_archon import archrule


def test_core_independent_of_transports() -> None:
    """
    Routing, retry and the registry are transport-agnostic.
    They must not import broker adapters or broker client libraries.
    """
    (
        archrule("core_is_transport_agnostic")
        .match("integration_bus.classification")
        .match("integration_bus.retry")
        .match("integration_bus.registry")
        .match("integration_bus.topics")
        .match("integration_bus.envelope")
        .match("integration_bus.events")
        .match("integration_bus.serialization")
        .match("integration_bus.config")
        .should_not_import("integration_bus.rabbitmq*")
        .should_not_import("integration_bus.aws*")
        .should_not_import("integration_bus.factory")
        .should_not_import("aio_pika*")
        .should_not_import("aiobotocore*")
        .check("integration_bus")
    )


def test_dead_letter_layering() -> None:
    """
    Dead-letter services depend on the retry policy, never on a bus.
    """
    (
        archrule("dead_letter_layering")
        .match("integration_bus.dead_letter*")
        .should_not_import("integration_bus.bus")
        .should_not_import("integration_bus.factory")
        .should_not_import("integration_bus.rabbitmq*")
        .should_not_import("integration_bus.aws*")
        .check("integration_bus")
    )


def test_transports_isolated() -> None:
    """
    Each transport adapter stands alone.
    """
    (
        archrule("rabbitmq_isolation")
        .match("integration_bus.rabbitmq*")
        .should_not_import("integration_bus.aws*")
        .should_not_import("aiobotocore*")
        .check("integration_bus")
    )
    (
        archrule("aws_isolation")
        .match("integration_bus.aws*")
        .should_not_import("integration_bus.rabbitmq*")
        .should_not_import("aio_pika*")
        .check("integration_bus")
    )


def test_ports_layering() -> None:
    """
    Ports (interfaces) should not depend on adapters (implementations).
    """
    (
        archrule("ports_layering")
        .match("integration_bus.ports")
        .should_not_import("integration_bus.rabbitmq*")
        .should_not_import("integration_bus.aws*")
        .should_not_import("integration_bus.memory*")
        .should_not_import("integration_bus.noop*")
        .check("integration_bus")
    )
