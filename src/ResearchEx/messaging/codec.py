"""Binary codec and validation for stage events.

Wire layout::

    b"RX" | version (1 byte) | schema id (1 byte) | zlib(orjson(record))

The record is validated by a Pydantic model that enforces field presence and
types (codec-level nullability). :meth:`StageEventCodec.validate` is a
separate domain check run before publish and after decode; a payload can
decode cleanly and still be invalid (for example a blank tenant).
"""

from __future__ import annotations

import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID

import orjson
import structlog
from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr
from pydantic import ValidationError as PydanticValidationError

from ResearchEx.utils.errors import FoundationError

from .events import DEID_FLOW, INGESTION_FLOW, DeidStage, IngestionStage, StageEvent, StageFlow

logger = structlog.get_logger(__name__)

MAGIC = b"RX"
WIRE_VERSION = 1
_HEADER_SIZE = len(MAGIC) + 2
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)

MAX_TENANT_ID_LENGTH = 64
MAX_RUN_ID_LENGTH = 200
MAX_SOURCE_SYSTEM_LENGTH = 128


class CodecError(FoundationError):
    """Base class for stage event encoding failures."""

    status = 422


class SchemaViolation(CodecError):
    """A required field is missing or has the wrong type."""

    problem_type = "https://researchex.dev/problems/schema-violation"


class InvalidEvent(SchemaViolation):
    """The event is structurally complete but violates a domain rule."""

    problem_type = "https://researchex.dev/problems/invalid-event"


class DecodeError(CodecError):
    """The payload is truncated, corrupt or does not match the schema."""

    status = 400
    problem_type = "https://researchex.dev/problems/decode-error"


class QuantityKind(str, Enum):
    COUNT = "count"
    LOCATION = "location"


@dataclass(frozen=True, slots=True)
class EventSchema:
    """Describes one topic's event contract."""

    name: str
    schema_id: int
    stage_type: type[IngestionStage] | type[DeidStage]
    flow: StageFlow
    quantity_kind: QuantityKind


INGESTION_SCHEMA = EventSchema(
    name="cdw.load",
    schema_id=1,
    stage_type=IngestionStage,
    flow=INGESTION_FLOW,
    quantity_kind=QuantityKind.COUNT,
)

DEID_SCHEMA = EventSchema(
    name="deid.job",
    schema_id=2,
    stage_type=DeidStage,
    flow=DEID_FLOW,
    quantity_kind=QuantityKind.LOCATION,
)


class _WireRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    event_id: StrictStr
    occurred_at: StrictInt
    tenant_id: StrictStr
    run_id: StrictStr
    stage: StrictStr
    quantity: StrictInt | StrictStr
    source_system: StrictStr
    error_code: StrictStr | None = None
    error_message: StrictStr | None = None


def _to_micros(value: datetime) -> int:
    return (value - _EPOCH) // _MICROSECOND


def _from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


def _missing_fields(error: PydanticValidationError) -> list[str]:
    return sorted({".".join(str(part) for part in item["loc"]) for item in error.errors()})


class StageEventCodec:
    """Encodes, decodes and validates :class:`StageEvent` values for one schema."""

    def __init__(self, schema: EventSchema) -> None:
        self._schema = schema
        self._header = MAGIC + bytes([WIRE_VERSION, schema.schema_id])

    @property
    def schema(self) -> EventSchema:
        return self._schema

    def encode(self, event: StageEvent) -> bytes:
        """Serialise ``event``.

        Raises:
            SchemaViolation: A required field is unset, null or mistyped.
        """
        occurred_at = getattr(event, "occurred_at", None)
        if not isinstance(occurred_at, datetime) or occurred_at.tzinfo is None:
            raise SchemaViolation(
                "Stage event is missing a timezone-aware occurred_at",
                extra={"fields": ["occurred_at"]},
            )
        stage = getattr(event, "stage", None)
        if not isinstance(stage, self._schema.stage_type):
            raise SchemaViolation(
                f"Stage {stage!r} does not belong to schema '{self._schema.name}'",
                extra={"fields": ["stage"]},
            )
        try:
            record = _WireRecord(
                event_id=event.event_id,
                occurred_at=_to_micros(occurred_at),
                tenant_id=event.tenant_id,
                run_id=event.run_id,
                stage=stage.value,
                quantity=event.quantity,
                source_system=event.source_system,
                error_code=event.error_code,
                error_message=event.error_message,
            )
        except PydanticValidationError as exc:
            fields = _missing_fields(exc)
            raise SchemaViolation(
                f"Stage event violates schema '{self._schema.name}'",
                detail=", ".join(fields),
                extra={"fields": fields},
            ) from exc
        body = orjson.dumps(record.model_dump(exclude_none=True))
        return self._header + zlib.compress(body)

    def decode(self, payload: bytes) -> StageEvent:
        """Deserialise ``payload``.

        Raises:
            DecodeError: The payload is truncated, corrupt, carries another
                schema or does not satisfy the record model.
        """
        if len(payload) < _HEADER_SIZE or payload[: len(MAGIC)] != MAGIC:
            raise DecodeError("Payload is not a stage event frame")
        version, schema_id = payload[len(MAGIC)], payload[len(MAGIC) + 1]
        if version != WIRE_VERSION:
            raise DecodeError(f"Unsupported wire version {version}")
        if schema_id != self._schema.schema_id:
            raise DecodeError(
                f"Payload schema id {schema_id} does not match '{self._schema.name}'"
            )
        try:
            raw: Any = orjson.loads(zlib.decompress(payload[_HEADER_SIZE:]))
        except (zlib.error, orjson.JSONDecodeError) as exc:
            raise DecodeError("Stage event body is corrupt or truncated", detail=str(exc)) from exc
        try:
            record = _WireRecord.model_validate(raw)
        except PydanticValidationError as exc:
            fields = _missing_fields(exc)
            raise DecodeError(
                "Stage event body does not match the schema",
                detail=", ".join(fields),
                extra={"fields": fields},
            ) from exc
        try:
            stage = self._schema.stage_type(record.stage)
        except ValueError as exc:
            raise DecodeError(f"Unknown stage '{record.stage}'") from exc
        return StageEvent(
            event_id=record.event_id,
            occurred_at=_from_micros(record.occurred_at),
            tenant_id=record.tenant_id,
            run_id=record.run_id,
            stage=stage,
            quantity=record.quantity,
            source_system=record.source_system,
            error_code=record.error_code,
            error_message=record.error_message,
        )

    def validate(self, event: StageEvent) -> None:
        """Check the domain rules an event must satisfy regardless of encoding.

        Raises:
            InvalidEvent: The first violated rule.
        """
        problems: list[str] = []
        try:
            UUID(str(event.event_id))
        except ValueError:
            problems.append("event_id must be a UUID")
        _check_text(problems, "tenant_id", event.tenant_id, MAX_TENANT_ID_LENGTH)
        _check_text(problems, "run_id", event.run_id, MAX_RUN_ID_LENGTH)
        _check_text(problems, "source_system", event.source_system, MAX_SOURCE_SYSTEM_LENGTH)
        if not isinstance(event.occurred_at, datetime) or event.occurred_at.tzinfo is None:
            problems.append("occurred_at must be timezone-aware")
        if not isinstance(event.stage, self._schema.stage_type):
            problems.append(f"stage must be a {self._schema.stage_type.__name__}")
        if self._schema.quantity_kind is QuantityKind.COUNT:
            if isinstance(event.quantity, bool) or not isinstance(event.quantity, int):
                problems.append("quantity must be a record count")
        elif not isinstance(event.quantity, str) or not event.quantity.strip():
            problems.append("quantity must be a payload location")
        failed = event.stage == self._schema.flow.failed
        if failed and not (event.error_code and event.error_code.strip()):
            problems.append("FAILED events require an error_code")
        if not failed and (event.error_code is not None or event.error_message is not None):
            problems.append("only FAILED events may carry error fields")
        if problems:
            logger.debug(
                "codec.validation.rejected",
                schema=self._schema.name,
                run_id=getattr(event, "run_id", None),
                problems=problems,
            )
            raise InvalidEvent(
                f"Stage event violates '{self._schema.name}' rules",
                detail="; ".join(problems),
                extra={"problems": problems},
            )


def _check_text(problems: list[str], name: str, value: object, max_length: int) -> None:
    if not isinstance(value, str) or not value.strip():
        problems.append(f"{name} must not be blank")
    elif len(value) > max_length:
        problems.append(f"{name} exceeds {max_length} characters")


__all__ = [
    "CodecError",
    "DEID_SCHEMA",
    "DecodeError",
    "EventSchema",
    "INGESTION_SCHEMA",
    "InvalidEvent",
    "QuantityKind",
    "SchemaViolation",
    "StageEventCodec",
    "WIRE_VERSION",
]
