"""
Timing metrics for parameter synchronization rounds.

Workers record stage durations in nanoseconds while a round runs; the
driver reads them back once the round is done.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class RoundContext:
    """
    Per-round state threaded through every task of the round.

    Replaces the process-wide "last task start time": each task stamps its
    own context instead of sharing a global.
    """
    round_id: int
    partition_id: int
    task_start_ns: int = field(default_factory=time.perf_counter_ns)

    def elapsed_ns(self) -> int:
        return time.perf_counter_ns() - self.task_start_ns


class Metrics:
    """
    Thread-safe named metrics.

    Scalars accumulate with add(); per-node samples are appended with
    add_sample() and kept as a list.
    """

    def __init__(self):
        self._values: Dict[str, float] = defaultdict(float)
        self._counts: Dict[str, int] = defaultdict(int)
        self._samples: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def set(self, name: str, value: float = 0.0):
        """Reset a scalar metric"""
        with self._lock:
            self._values[name] = value
            self._counts[name] = 0

    def add(self, name: str, value: float):
        with self._lock:
            self._values[name] += value
            self._counts[name] += 1

    def add_sample(self, name: str, value: float):
        with self._lock:
            self._samples[name].append(value)

    def reset_samples(self, name: str):
        with self._lock:
            self._samples[name] = []

    def get(self, name: str) -> float:
        with self._lock:
            return self._values.get(name, 0.0)

    def average(self, name: str) -> Optional[float]:
        with self._lock:
            count = self._counts.get(name, 0)
            if count == 0:
                return None
            return self._values[name] / count

    def samples(self, name: str) -> List[float]:
        with self._lock:
            return list(self._samples.get(name, ()))

    def summary(self, unit: float = 1e6) -> str:
        """
        Render all metrics, converting nanoseconds by `unit` (default: ms).
        """
        with self._lock:
            lines = []
            for name in sorted(self._values):
                count = self._counts[name]
                average = self._values[name] / count if count else self._values[name]
                lines.append(f"{name}: {average / unit:.3f}")
            for name in sorted(self._samples):
                values = ", ".join(f"{v / unit:.3f}" for v in self._samples[name])
                lines.append(f"{name}: [{values}]")
        return "\n".join(lines)

    def __repr__(self):
        with self._lock:
            return f"Metrics(values={len(self._values)}, samples={len(self._samples)})"


class StageTimer:
    """
    Context manager adding the elapsed time of a block to a metric.

    Example:
        >>> with StageTimer(metrics, "worker put result"):
        ...     publish()
    """

    def __init__(self, metrics: Metrics, name: str):
        self.metrics = metrics
        self.name = name
        self._start = 0

    def __enter__(self):
        self._start = time.perf_counter_ns()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.metrics.add(self.name, time.perf_counter_ns() - self._start)
        return False
