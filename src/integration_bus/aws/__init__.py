"""AWS transport adapter: SNS topics and SQS queues via aiobotocore."""

from __future__ import annotations

from .bus import AwsMessageBus
from .connection import AwsConnectionManager
from .dead_letter import AwsDeadLetterService
from .errors import classify_aws_error

__all__ = [
    "AwsConnectionManager",
    "AwsDeadLetterService",
    "AwsMessageBus",
    "classify_aws_error",
]
