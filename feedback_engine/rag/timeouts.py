"""Bounded-time execution for blocking provider calls."""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, TypeVar

T = TypeVar("T")

# Shared pool for outbound provider calls (embedding, generation)
_provider_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="provider_call")


def call_with_timeout(fn: Callable[[], T], timeout: float | None) -> T:
    """Run fn on the provider pool and wait at most timeout seconds.

    A timed-out call keeps running in its worker thread; its result is
    discarded.

    Raises:
        concurrent.futures.TimeoutError: The call did not finish in time.
    """
    if timeout is None or timeout <= 0:
        return fn()
    future = _provider_executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise
