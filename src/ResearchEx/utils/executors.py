"""Scoping of blocking calls made from coroutines onto a chosen executor."""

from __future__ import annotations

import asyncio
import contextvars
import functools
from collections.abc import Callable, Iterator
from concurrent.futures import Executor
from contextlib import contextmanager
from typing import Any, TypeVar

R = TypeVar("R")

_current_executor: contextvars.ContextVar[Executor | None] = contextvars.ContextVar(
    "researchex_executor", default=None
)


@contextmanager
def use_executor(executor: Executor) -> Iterator[None]:
    """Route :func:`run_blocking` calls made inside the block to ``executor``."""
    token = _current_executor.set(executor)
    try:
        yield
    finally:
        _current_executor.reset(token)


def current_executor() -> Executor | None:
    return _current_executor.get()


async def run_blocking(fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
    """Run the blocking callable ``fn`` off the event loop.

    Inside a :func:`use_executor` block the call runs on that executor,
    elsewhere on the loop's default executor. Context variables of the caller
    are visible inside ``fn``.
    """
    call = functools.partial(contextvars.copy_context().run, fn, *args, **kwargs)
    return await asyncio.get_running_loop().run_in_executor(_current_executor.get(), call)


__all__ = ["current_executor", "run_blocking", "use_executor"]
