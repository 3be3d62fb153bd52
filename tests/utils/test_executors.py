from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from ResearchEx.utils.executors import current_executor, run_blocking, use_executor
from ResearchEx.utils.logging import bind_correlation_id, get_correlation_id, reset_correlation_id


@pytest.mark.asyncio
async def test_run_blocking_uses_the_scoped_executor() -> None:
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scoped")
    try:
        with use_executor(executor):
            assert current_executor() is executor
            inside = await run_blocking(lambda: threading.current_thread().name)
        outside = await run_blocking(lambda: threading.current_thread().name)
    finally:
        executor.shutdown(wait=False)

    assert inside.startswith("scoped")
    assert not outside.startswith("scoped")
    assert current_executor() is None


@pytest.mark.asyncio
async def test_run_blocking_carries_context_variables() -> None:
    token = bind_correlation_id("event-7")
    try:
        seen = await run_blocking(get_correlation_id)
    finally:
        reset_correlation_id(token)

    assert seen == "event-7"
