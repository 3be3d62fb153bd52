"""Problem detail helpers for consistent error reporting across services.

Key Responsibilities:
    - Provide RFC 7807 shaped data structures used when a failure has to be
      described outside the process (FAILED events, logs, metrics labels)
    - Supply a base exception that carries problem details

Collaborators:
    - Upstream: codec, transport, orchestration and storage layers raise
      subclasses of ``FoundationError``
    - Downstream: orchestrators convert them into ``FailureReason`` values

Side Effects:
    - None; helpers are pure data containers
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

__all__ = ["FoundationError", "ProblemDetail"]


@dataclass(slots=True)
class ProblemDetail:
    """Lightweight problem details object compliant with RFC 7807."""

    title: str
    status: int
    detail: str | None = None
    type: str = "about:blank"
    instance: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def model_dump(self) -> dict[str, Any]:
        """Return a dictionary representation with optional fields dropped."""
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        if not payload.get("extra"):
            payload.pop("extra", None)
        return payload


class FoundationError(RuntimeError):
    """Base exception that carries a :class:`ProblemDetail` instance."""

    status: int = 500
    problem_type: str = "about:blank"

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        detail: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialise the exception with structured problem detail attributes.

        Args:
            message: Human readable error summary.
            status: Optional status override; defaults to the class status.
            detail: Optional detailed description of the failure.
            extra: Additional attributes included in the serialized payload.
        """
        super().__init__(message)
        self.problem = ProblemDetail(
            title=message,
            status=status if status is not None else self.status,
            detail=detail,
            type=self.problem_type,
            extra=extra or {},
        )
