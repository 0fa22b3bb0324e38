"""
Interactive thread bookkeeping and the background worker pool.

Exactly one thread may be marked interactive. Remote calls must never run on
it; callers on that thread hand work to `run_in_background` instead.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable
from typing import Any

from .config import int_env

logger = logging.getLogger(__name__)

DEFAULT_BACKGROUND_WORKERS = 4

_state_lock = threading.Lock()
_interactive_thread_id: int | None = None
_executor: concurrent.futures.ThreadPoolExecutor | None = None


def mark_interactive_thread(thread: threading.Thread | None = None) -> None:
    """Declare `thread` (default: the calling thread) the interactive thread."""
    global _interactive_thread_id
    target = thread or threading.current_thread()
    with _state_lock:
        _interactive_thread_id = target.ident


def clear_interactive_thread() -> None:
    global _interactive_thread_id
    with _state_lock:
        _interactive_thread_id = None


def is_interactive_thread() -> bool:
    with _state_lock:
        current = _interactive_thread_id
    return current is not None and current == threading.get_ident()


def background_workers() -> int:
    """Pool size from TRACKER_MIRROR_BACKGROUND_WORKERS, read when the pool is built."""
    workers = int_env("TRACKER_MIRROR_BACKGROUND_WORKERS", DEFAULT_BACKGROUND_WORKERS)
    if workers < 1:
        logger.warning("Ignoring non-positive background worker count %d", workers)
        return DEFAULT_BACKGROUND_WORKERS
    return workers


def _get_executor() -> concurrent.futures.ThreadPoolExecutor:
    global _executor
    with _state_lock:
        if _executor is None:
            _executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=background_workers(), thread_name_prefix="tracker-mirror-bg"
            )
        return _executor


def run_in_background(fn: Callable[..., Any], *args: Any) -> concurrent.futures.Future:
    """Run a one-shot task on a worker thread; failures are logged."""

    def _run() -> Any:
        try:
            return fn(*args)
        except Exception:
            logger.exception("Background task %s failed", getattr(fn, "__name__", fn))
            raise

    return _get_executor().submit(_run)


def shutdown(wait: bool = True) -> None:
    global _executor
    with _state_lock:
        executor = _executor
        _executor = None
    if executor is not None:
        executor.shutdown(wait=wait)
