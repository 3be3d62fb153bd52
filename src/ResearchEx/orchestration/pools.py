"""Bounded worker pools that keep CPU-bound and IO-bound steps apart.

Each pipeline owns one CPU pool (validation, mapping) and one IO pool
(persistence, masking). Admission follows the usual core/max/queue sizing:

- a task starts at once while fewer than ``core_size`` tasks are running
- otherwise it waits in the queue while the queue has room
- with the queue full the pool grows up to ``max_size`` running tasks
- beyond that the saturation policy applies

Saturation policies:

- ``wait``: the submitting coroutine waits for a slot (backpressure)
- ``reject``: :class:`PoolSaturated` is raised immediately

Blocking callables go through :meth:`WorkerPool.submit` and run on the
pool's threads. Coroutine steps go through :meth:`WorkerPool.run`; blocking
calls they make through :func:`ResearchEx.utils.executors.run_blocking` land
on the same threads without taking a second slot.
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog

from ResearchEx.config.settings import PoolSettings, SaturationPolicy
from ResearchEx.observability import MessagingMetricRegistry
from ResearchEx.utils.errors import FoundationError
from ResearchEx.utils.executors import use_executor

logger = structlog.get_logger(__name__)

R = TypeVar("R")


class PoolSaturated(FoundationError):
    """Every worker and queue slot of a pool is taken."""

    status = 503
    problem_type = "https://researchex.dev/problems/pool-saturated"


class WorkerPool:
    """Thread pool with bounded admission, awaited from asyncio code."""

    def __init__(
        self,
        name: str,
        settings: PoolSettings,
        *,
        metrics: MessagingMetricRegistry | None = None,
    ) -> None:
        self._name = name
        self._settings = settings
        self._metrics = metrics
        self._capacity = settings.max_size + settings.queue_capacity
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_size,
            thread_name_prefix=settings.thread_name_prefix,
        )
        self._running = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._waiters)

    @property
    def in_flight(self) -> int:
        return self._running + len(self._waiters)

    @property
    def saturation_policy(self) -> SaturationPolicy:
        return self._settings.saturation_policy

    async def submit(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Run the blocking callable ``fn`` on a pool thread and return its result.

        The caller's context variables (log bindings, correlation id) are
        visible inside ``fn``.

        Raises:
            PoolSaturated: The pool is full and the policy is ``reject``.
            RuntimeError: The pool has been shut down.
        """
        async with self._slot():
            call = functools.partial(contextvars.copy_context().run, fn, *args, **kwargs)
            return await asyncio.get_running_loop().run_in_executor(self._executor, call)

    async def run(self, fn: Callable[..., Awaitable[R]], *args: Any, **kwargs: Any) -> R:
        """Await the coroutine function ``fn`` under this pool's limits.

        Raises:
            PoolSaturated: The pool is full and the policy is ``reject``.
            RuntimeError: The pool has been shut down.
        """
        async with self._slot():
            with use_executor(self._executor):
                return await fn(*args, **kwargs)

    def shutdown(self, *, wait: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        await self._acquire()
        try:
            yield
        finally:
            self._release()

    async def _acquire(self) -> None:
        if self._closed:
            raise RuntimeError(f"Worker pool '{self._name}' is shut down")
        settings = self._settings
        queue_full = len(self._waiters) >= settings.queue_capacity
        if self._running < settings.core_size or (queue_full and self._running < settings.max_size):
            self._running += 1
            self._track()
            return
        if queue_full and settings.saturation_policy is SaturationPolicy.REJECT:
            logger.warning("pool.saturated", pool=self._name, capacity=self._capacity)
            raise PoolSaturated(
                f"Worker pool '{self._name}' is saturated",
                extra={"pool": self._name, "capacity": self._capacity},
            )
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._track()
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over before the cancellation landed.
                self._release()
            else:
                self._waiters.remove(waiter)
                self._track()
            raise

    def _release(self) -> None:
        # A finishing task hands its slot to the oldest queued one.
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                self._track()
                return
        self._running -= 1
        self._track()

    def _track(self) -> None:
        if self._metrics is not None:
            self._metrics.set_pool_in_flight(self._name, self.in_flight)


__all__ = ["PoolSaturated", "SaturationPolicy", "WorkerPool"]
