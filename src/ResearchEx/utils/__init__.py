"""Shared utilities."""

from .errors import FoundationError, ProblemDetail
from .executors import run_blocking, use_executor

__all__ = ["FoundationError", "ProblemDetail", "run_blocking", "use_executor"]
