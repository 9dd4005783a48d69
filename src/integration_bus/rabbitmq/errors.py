"""Failure classification for aio_pika / AMQP errors."""

from __future__ import annotations

from aio_pika import exceptions as amqp

from ..classification import FailureKind

_PERMANENT = (
    amqp.ChannelNotFoundEntity,
    amqp.ChannelPreconditionFailed,
    amqp.ProbableAuthenticationError,
    amqp.AuthenticationError,
)

_TRANSIENT = (
    amqp.AMQPConnectionError,
    amqp.ChannelClosed,
    amqp.ConnectionClosed,
    amqp.DeliveryError,
    amqp.PublishError,
    amqp.ChannelInvalidStateError,
)


def classify_amqp_error(exc: BaseException) -> FailureKind | None:
    """Broker-side rejections of the request itself are permanent; lost
    connections, closed channels and unconfirmed publishes are transient."""
    if isinstance(exc, _PERMANENT):
        return FailureKind.PERMANENT
    if isinstance(exc, _TRANSIENT):
        return FailureKind.TRANSIENT
    return None
