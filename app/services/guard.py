# app/services/guard.py
"""
Hard time limit around external calls (channel sends, conversion checks).

One stuck provider call must not stall the whole sweep, so the call runs on a
worker thread and we stop waiting after `timeout` seconds. The worker is not
killed: a send that is already in flight may still complete after we gave up.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class CallTimeout(Exception):
    """Raised when a guarded call did not return in time."""

    def __init__(self, label: str, timeout: float):
        super().__init__(f"{label} timed out after {timeout:g}s")
        self.label = label
        self.timeout = timeout


def call_with_timeout(fn: Callable[..., T], *args: Any, timeout: float, label: str = "call", **kwargs: Any) -> T:
    if not timeout or timeout <= 0:
        return fn(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="guard")
    try:
        future = executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            log.error("[guard] %s timed out after %ss", label, timeout)
            raise CallTimeout(label, timeout) from None
    finally:
        # never block on a hung worker
        executor.shutdown(wait=False)
