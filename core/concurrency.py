"""
Bounded worker pool for per-shard fetches and range reductions.

The pool only ever blocks at "wait for everything I submitted" points.
Tasks are plain callables; there is no timeout and no cancellation token.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, FIRST_EXCEPTION, wait as wait_futures
from typing import Callable, Iterable, List, Optional, TypeVar

from core.exceptions import AllReduceError, ConcurrencyTaskError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_pool_size() -> int:
    """Half of the available hardware threads, at least one"""
    return max(1, (os.cpu_count() or 1) // 2)


class ConcurrencyPool:
    """
    Fixed-size thread pool exposing invoke-all semantics.

    Example:
        >>> pool = ConcurrencyPool(pool_size=4)
        >>> pool.invoke_all([lambda: 1, lambda: 2])
        [1, 2]
    """

    def __init__(self, pool_size: Optional[int] = None, name: str = "allreduce"):
        """
        Args:
            pool_size: Number of threads (default: half the hardware threads)
            name: Thread name prefix
        """
        if pool_size is None:
            pool_size = default_pool_size()
        if pool_size < 1:
            raise ValueError(f"pool_size must be positive, got {pool_size}")

        self.pool_size = pool_size
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix=name)

    def invoke_all(self, tasks: Iterable[Callable[[], T]]) -> List[T]:
        """
        Run every task and wait for all of them.

        Args:
            tasks: Zero-argument callables

        Returns:
            Task results in submission order

        Raises:
            AllReduceError: Re-raised unchanged when a task fails with one
            ConcurrencyTaskError: If a task raised anything else

        On the first failure pending tasks are cancelled and every other
        result is discarded.
        """
        futures = [self._executor.submit(task) for task in tasks]
        if not futures:
            return []

        done, not_done = wait_futures(futures, return_when=FIRST_EXCEPTION)

        for index, future in enumerate(futures):
            if future in done and future.exception() is not None:
                for pending in not_done:
                    pending.cancel()
                cause = future.exception()
                logger.error(f"Task {index}/{len(futures)} in pool '{self.name}' failed: {cause!r}")
                if isinstance(cause, AllReduceError):
                    raise cause
                raise ConcurrencyTaskError(
                    f"Task {index} of {len(futures)} failed: {cause!r}",
                    task_index=index,
                ) from cause

        return [future.result() for future in futures]

    def shutdown(self, wait: bool = True):
        """Stop accepting work and release the threads"""
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    def __repr__(self):
        return f"ConcurrencyPool(name='{self.name}', size={self.pool_size})"
