"""Tagged result threaded through the asynchronous steps of a run."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")


class FailureKind(str, Enum):
    VALIDATION = "validation"
    SCHEMA = "schema"
    TRANSPORT = "transport"
    IO = "io"
    SATURATION = "saturation"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True, slots=True)
class FailureReason:
    """Why a run failed; becomes the payload of its FAILED event."""

    kind: FailureKind
    code: str
    message: str


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err:
    reason: FailureReason

    @property
    def is_ok(self) -> bool:
        return False


Result = Ok[T] | Err


async def bind(result: Result[T], step: Callable[[T], Awaitable[Result[U]]]) -> Result[U]:
    """Run ``step`` on the value of ``result``; an ``Err`` short-circuits."""
    if isinstance(result, Err):
        return result
    return await step(result.value)


__all__ = ["Err", "FailureKind", "FailureReason", "Ok", "Result", "bind"]
