"""
Tests for round timing metrics
"""

import threading

from parameters.metrics import Metrics, RoundContext, StageTimer


class TestMetrics:
    """Test thread-safe metric accumulation"""

    def test_add_and_average(self):
        metrics = Metrics()
        metrics.add("gradient reduce", 10)
        metrics.add("gradient reduce", 30)

        assert metrics.get("gradient reduce") == 40
        assert metrics.average("gradient reduce") == 20

    def test_unknown_metric(self):
        metrics = Metrics()

        assert metrics.get("missing") == 0.0
        assert metrics.average("missing") is None
        assert metrics.samples("missing") == []

    def test_set_resets(self):
        metrics = Metrics()
        metrics.add("worker update", 5)
        metrics.set("worker update")

        assert metrics.get("worker update") == 0.0
        assert metrics.average("worker update") is None

    def test_samples(self):
        metrics = Metrics()
        metrics.add_sample("task2 time from worker", 1.0)
        metrics.add_sample("task2 time from worker", 2.0)

        assert metrics.samples("task2 time from worker") == [1.0, 2.0]

        metrics.reset_samples("task2 time from worker")
        assert metrics.samples("task2 time from worker") == []

    def test_concurrent_adds(self):
        metrics = Metrics()

        def work():
            for _ in range(1000):
                metrics.add("counter", 1)

        threads = [threading.Thread(target=work) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert metrics.get("counter") == 4000

    def test_summary_in_milliseconds(self):
        metrics = Metrics()
        metrics.add("worker put result", 2_000_000)
        metrics.add_sample("sync weight for each node", 1_500_000)

        summary = metrics.summary()

        assert "worker put result: 2.000" in summary
        assert "sync weight for each node: [1.500]" in summary


class TestStageTimer:
    """Test timing context manager"""

    def test_records_elapsed_time(self):
        metrics = Metrics()

        with StageTimer(metrics, "worker serialize weight"):
            sum(range(1000))

        assert metrics.get("worker serialize weight") > 0
        assert metrics.average("worker serialize weight") is not None

    def test_records_on_exception(self):
        metrics = Metrics()

        try:
            with StageTimer(metrics, "worker update"):
                raise RuntimeError("update failed")
        except RuntimeError:
            pass

        assert metrics.average("worker update") is not None


class TestRoundContext:
    """Test per-task round context"""

    def test_elapsed(self):
        context = RoundContext(round_id=3, partition_id=1)

        assert context.round_id == 3
        assert context.partition_id == 1
        assert context.elapsed_ns() >= 0
