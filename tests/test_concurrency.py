"""
Tests for the bounded worker pool
"""

import threading
import time

import pytest

from core.concurrency import ConcurrencyPool, default_pool_size
from core.exceptions import BlockNotFoundError, ConcurrencyTaskError


class TestConcurrencyPool:
    """Test invoke-all semantics"""

    @pytest.fixture
    def pool(self):
        pool = ConcurrencyPool(pool_size=4, name="test")
        yield pool
        pool.shutdown()

    def test_results_in_submission_order(self, pool):
        def task(i):
            time.sleep(0.001 * (5 - i))
            return i * 10

        results = pool.invoke_all([lambda i=i: task(i) for i in range(5)])

        assert results == [0, 10, 20, 30, 40]

    def test_empty_task_list(self, pool):
        assert pool.invoke_all([]) == []

    def test_concurrency_is_bounded(self):
        """Never more than pool_size tasks run at once"""
        active = 0
        peak = 0
        lock = threading.Lock()

        def task():
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with lock:
                active -= 1

        with ConcurrencyPool(pool_size=2) as pool:
            pool.invoke_all([task for _ in range(8)])

        assert 1 <= peak <= 2

    def test_failure_is_wrapped(self, pool):
        """Foreign exceptions surface as ConcurrencyTaskError with the cause attached"""
        def boom():
            raise ZeroDivisionError("bad shard")

        with pytest.raises(ConcurrencyTaskError) as exc_info:
            pool.invoke_all([lambda: 1, boom, lambda: 3])

        assert exc_info.value.task_index == 1
        assert isinstance(exc_info.value.__cause__, ZeroDivisionError)

    def test_engine_errors_pass_through(self, pool):
        """Engine errors keep their type so callers can tell failures apart"""
        error = BlockNotFoundError("weight_0")

        def missing():
            raise error

        with pytest.raises(BlockNotFoundError) as exc_info:
            pool.invoke_all([missing])

        assert exc_info.value is error

    def test_pool_usable_after_failure(self, pool):
        def boom():
            raise RuntimeError("x")

        with pytest.raises(ConcurrencyTaskError):
            pool.invoke_all([boom])

        assert pool.invoke_all([lambda: "ok"]) == ["ok"]

    def test_invalid_pool_size(self):
        with pytest.raises(ValueError):
            ConcurrencyPool(pool_size=0)

    def test_default_pool_size(self):
        assert default_pool_size() >= 1
        pool = ConcurrencyPool()
        assert pool.pool_size == default_pool_size()
        pool.shutdown()
