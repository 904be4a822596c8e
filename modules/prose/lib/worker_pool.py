"""Shared worker pools for fork/join over fragment-type operations."""

from __future__ import annotations

import atexit
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


_POOL_GUARD = threading.Lock()
_POOLS: Dict[Tuple[str, int], ThreadPoolExecutor] = {}
_START_POLL_SECONDS = 0.05


def _pool(pool_name: str, max_workers: int) -> ThreadPoolExecutor:
    key = (str(pool_name or "default"), max(1, int(max_workers)))
    with _POOL_GUARD:
        ex = _POOLS.get(key)
        if ex is None:
            ex = ThreadPoolExecutor(max_workers=key[1], thread_name_prefix=f"prose-{key[0]}")
            _POOLS[key] = ex
        return ex


def shutdown_worker_pools(wait: bool = False) -> None:
    """Shutdown and clear shared thread pools."""
    with _POOL_GUARD:
        pools = list(_POOLS.values())
        _POOLS.clear()
    for ex in pools:
        ex.shutdown(wait=wait, cancel_futures=True)


atexit.register(shutdown_worker_pools)


def run_callables(
    callables: Sequence[Callable[[], Any]],
    *,
    max_workers: int,
    pool_name: str = "default",
    timeout_seconds: Optional[float] = None,
    return_exceptions: bool = False,
) -> List[Any]:
    """Run callables in parallel and return results in submission order.

    ``timeout_seconds`` bounds each callable separately; its clock starts when
    the callable begins running, so work queued behind a busy pool is not
    charged for the wait. With ``return_exceptions=True`` a failing or
    timed-out callable yields its exception in place of a result, so one slot
    never hides the others.
    """
    funcs = list(callables or [])
    if not funcs:
        return []

    worker_count = max(1, min(int(max_workers), len(funcs)))
    if worker_count == 1 and timeout_seconds is None:
        out: List[Any] = []
        for fn in funcs:
            try:
                out.append(fn())
            except Exception as exc:
                if return_exceptions:
                    out.append(exc)
                else:
                    raise
        return out

    started: Dict[int, float] = {}

    def _clocked(idx: int, fn: Callable[[], Any]) -> Callable[[], Any]:
        def _run():
            started[idx] = time.monotonic()
            return fn()
        return _run

    ex = _pool(pool_name, worker_count)
    fut_to_idx = {ex.submit(_clocked(idx, fn)): idx for idx, fn in enumerate(funcs)}
    out = [None] * len(funcs)
    limit = None if timeout_seconds is None else max(0.0, float(timeout_seconds))
    pending = set(fut_to_idx.keys())

    while pending:
        wait_for = None
        if limit is not None:
            now = time.monotonic()
            running = {f: started[fut_to_idx[f]] for f in pending
                       if fut_to_idx[f] in started and not f.done()}
            expired = [f for f, began in running.items() if now - began >= limit]
            if expired:
                if not return_exceptions:
                    pending_indices = sorted(fut_to_idx[f] for f in pending)
                    for fut in pending:
                        fut.cancel()
                    raise TimeoutError(
                        f"Parallel call timed out after {timeout_seconds}s "
                        f"(pending_callable_indices={pending_indices})"
                    )
                for fut in expired:
                    pending.discard(fut)
                    idx = fut_to_idx[fut]
                    out[idx] = TimeoutError(
                        f"Parallel call timed out after {timeout_seconds}s (callable_index={idx})"
                    )
                continue
            waits = [began + limit - now for began in running.values()]
            if len(running) < len(pending):
                # Queued callables have no clock yet; poll until they start.
                waits.append(_START_POLL_SECONDS)
            wait_for = max(0.0, min(waits))

        done, _ = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)
        for fut in done:
            pending.discard(fut)
            idx = fut_to_idx[fut]
            try:
                out[idx] = fut.result()
            except Exception as exc:
                if return_exceptions:
                    out[idx] = exc
                else:
                    raise

    return out
