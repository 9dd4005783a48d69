"""Dead-letter records and statistics."""

from __future__ import annotations

import platform
import traceback
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..classification import FailureKind
from ..exceptions import MessagingSerializationError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FailureAttempt(_CamelModel):
    """One failed processing attempt."""

    attempt_number: int
    attempted_at: datetime = Field(default_factory=_utcnow)
    exception_type: str = ""
    exception_message: str = ""
    stack_trace: str = ""
    handler_type: str = ""

    @classmethod
    def from_exception(
        cls,
        exception: BaseException,
        attempt_number: int,
        handler_type: str,
    ) -> FailureAttempt:
        exc_type = type(exception)
        return cls(
            attempt_number=attempt_number,
            exception_type=f"{exc_type.__module__}.{exc_type.__qualname__}",
            exception_message=str(exception),
            stack_trace="".join(
                traceback.format_exception(
                    exc_type, exception, exception.__traceback__
                )
            ),
            handler_type=handler_type,
        )


class EnvironmentMetadata(_CamelModel):
    """Where the failure happened."""

    machine_name: str = Field(default_factory=platform.node)
    environment_name: str = ""
    application_version: str = ""
    service_instance: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class FailedMessageInfo(_CamelModel):
    """A message that was dead-lettered.

    Created once when the message lands in the dead-letter store; only
    reprocessing or purging removes it.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    message_type: str
    original_message: str = ""
    source_queue: str
    failure_reason: str = ""
    failure_kind: FailureKind = FailureKind.TRANSIENT
    attempt_count: int = Field(default=1, ge=1)
    first_failed_at: datetime = Field(default_factory=_utcnow)
    last_failed_at: datetime = Field(default_factory=_utcnow)
    handler_type: str = ""
    correlation_id: str | None = None
    failure_history: list[FailureAttempt] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    environment: EnvironmentMetadata = Field(default_factory=EnvironmentMetadata)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> FailedMessageInfo:
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise MessagingSerializationError(
                f"Invalid dead-letter record: {e}"
            ) from e


class DeadLetterStatistics(_CamelModel):
    """Aggregate view of the dead-letter store, computed on demand."""

    total_dead_lettered: int = 0
    by_message_type: dict[str, int] = Field(default_factory=dict)
    by_queue: dict[str, int] = Field(default_factory=dict)
    oldest_unprocessed_at: datetime | None = None
    generated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_records(
        cls,
        records: list[FailedMessageInfo],
        *,
        by_queue: dict[str, int] | None = None,
    ) -> DeadLetterStatistics:
        by_type: dict[str, int] = {}
        for record in records:
            by_type[record.message_type] = by_type.get(record.message_type, 0) + 1
        oldest = min((r.first_failed_at for r in records), default=None)
        return cls(
            total_dead_lettered=len(records),
            by_message_type=by_type,
            by_queue=by_queue or {},
            oldest_unprocessed_at=oldest,
        )
