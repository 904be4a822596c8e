"""Global LLM concurrency gate.

Every reasoning call passes through this allocator so concurrency across
fragment-type fan-outs is centrally bounded by config.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional


logger = logging.getLogger(__name__)

_POOL_LOCK = threading.Lock()
_POOL: Optional[threading.BoundedSemaphore] = None
_POOL_SIZE = 0
_POOL_RESIZE_WARNED = False


def _configured_slots() -> int:
    from config import get_config

    evolution = getattr(get_config(), "evolution", None)
    slots = int(getattr(evolution, "llm_workers", 4) or 4)
    return max(1, slots)


def _ensure_pool() -> threading.BoundedSemaphore:
    global _POOL, _POOL_SIZE, _POOL_RESIZE_WARNED
    desired = _configured_slots()
    with _POOL_LOCK:
        if _POOL is None:
            _POOL = threading.BoundedSemaphore(desired)
            _POOL_SIZE = desired
            _POOL_RESIZE_WARNED = False
        elif _POOL_SIZE != desired and not _POOL_RESIZE_WARNED:
            # Resizing a live semaphore can strand waiters on the old instance.
            _POOL_RESIZE_WARNED = True
            logger.warning(
                "[llm_pool] Requested pool resize %s -> %s ignored; restart process to apply.",
                _POOL_SIZE,
                desired,
            )
        return _POOL


def reset_llm_pool() -> None:
    """Drop the gate so the next call re-reads config (for tests)."""
    global _POOL, _POOL_SIZE, _POOL_RESIZE_WARNED
    with _POOL_LOCK:
        _POOL = None
        _POOL_SIZE = 0
        _POOL_RESIZE_WARNED = False


@contextmanager
def acquire_llm_slot(timeout_seconds: Optional[float] = None) -> Iterator[None]:
    """Acquire a shared LLM slot before making provider calls."""
    sem = _ensure_pool()
    if timeout_seconds is None:
        acquired = sem.acquire()
    else:
        acquired = sem.acquire(timeout=max(0.0, float(timeout_seconds)))
    if not acquired:
        raise TimeoutError("Timed out waiting for LLM worker slot")
    try:
        yield
    finally:
        sem.release()
