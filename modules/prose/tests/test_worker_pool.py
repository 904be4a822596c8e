"""Tests for lib/worker_pool.py: shared pools and fork/join semantics."""

import os
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from lib import worker_pool


def test_shutdown_worker_pools_clears_pool_registry():
    out = worker_pool.run_callables(
        [lambda: 1, lambda: 2],
        max_workers=2,
        pool_name="test-shutdown",
    )
    assert out == [1, 2]
    assert worker_pool._POOLS

    worker_pool.shutdown_worker_pools(wait=False)
    assert worker_pool._POOLS == {}


def test_timeout_exception_includes_pending_callable_indices():
    with pytest.raises(TimeoutError, match="pending_callable_indices"):
        worker_pool.run_callables(
            [lambda: time.sleep(0.2), lambda: time.sleep(0.2)],
            max_workers=2,
            pool_name="test-timeout-indices",
            timeout_seconds=0.01,
            return_exceptions=False,
        )


def test_timeout_return_exceptions_include_callable_index():
    out = worker_pool.run_callables(
        [lambda: time.sleep(0.2), lambda: time.sleep(0.2)],
        max_workers=2,
        pool_name="test-timeout-index-per-item",
        timeout_seconds=0.01,
        return_exceptions=True,
    )
    assert len(out) == 2
    assert all(isinstance(item, TimeoutError) for item in out)
    assert "callable_index=0" in str(out[0])
    assert "callable_index=1" in str(out[1])


def test_results_keep_submission_order():
    def slow(value, delay):
        def _fn():
            time.sleep(delay)
            return value
        return _fn

    out = worker_pool.run_callables(
        [slow("a", 0.05), slow("b", 0.0), slow("c", 0.02)],
        max_workers=3,
        pool_name="test-order",
    )
    assert out == ["a", "b", "c"]


def test_return_exceptions_isolates_failing_slot():
    def boom():
        raise RuntimeError("narrative failed")

    out = worker_pool.run_callables(
        [lambda: "decisions", boom, lambda: "focus"],
        max_workers=3,
        pool_name="test-bulkhead",
        return_exceptions=True,
    )
    assert out[0] == "decisions"
    assert isinstance(out[1], RuntimeError)
    assert out[2] == "focus"


def test_single_worker_runs_inline_and_raises():
    def boom():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        worker_pool.run_callables([boom], max_workers=4, pool_name="test-inline")
    assert worker_pool.run_callables([], max_workers=4) == []


def test_timeout_clock_starts_when_each_callable_runs():
    def nap(value):
        def _fn():
            time.sleep(0.25)
            return value
        return _fn

    out = worker_pool.run_callables(
        [nap("a"), nap("b"), nap("c"), nap("d")],
        max_workers=2,
        pool_name="test-per-call-clock",
        timeout_seconds=0.4,
        return_exceptions=True,
    )
    assert out == ["a", "b", "c", "d"]


def test_single_worker_honours_timeout():
    out = worker_pool.run_callables(
        [lambda: "fast", lambda: time.sleep(0.5)],
        max_workers=1,
        pool_name="test-single-timeout",
        timeout_seconds=0.05,
        return_exceptions=True,
    )
    assert out[0] == "fast"
    assert isinstance(out[1], TimeoutError)
    assert "callable_index=1" in str(out[1])
