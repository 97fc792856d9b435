"""
AllReduce parameter manager.

Synchronizes one flat parameter vector across P shard owners without a
central parameter server. Each round runs in two jobs on the compute
substrate:

1. Scatter: every partition compresses its full local gradient once and
   publishes slice k under GRADIENT(self, k) for every shard owner k.
2. Gather+update: every owner fetches GRADIENT(sender, self) from all
   senders, reduces them, applies the caller's update function to its
   weight slice and republishes WEIGHT(self).

The scatter job is drained completely before the gather job starts; that
is the only barrier between the phases.
"""

import copy
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional, Protocol, Sequence

import torch

from core.compression import (
    FP16CompressedTensor,
    FP16SplitsCompressedTensor,
    check_payload,
    decompress_bytes_into,
)
from core.concurrency import ConcurrencyPool
from core.exceptions import RoundStateError
from core.partitioner import ShardDescriptor, ShardPartitioner, split_range
from communication.block_exchange import BlockExchange
from communication.block_store import BlockId
from parameters.config import AllReduceConfig
from parameters.metrics import Metrics, RoundContext, StageTimer


logger = logging.getLogger(__name__)


class UpdateFunction(Protocol):
    """
    Caller-supplied update rule.

    Mutates `weight` (and `state`) in place from the summed `gradient` of
    one shard. Returns nothing. Called at most once per shard per round and
    concurrently across disjoint shards.
    """

    def __call__(self, weight: torch.Tensor, gradient: torch.Tensor, state: Dict[str, Any]) -> None:
        ...


@dataclass
class LocalWorkerState:
    """Buffers owned by the worker holding one shard, kept for the whole job"""
    shard: ShardDescriptor
    gradient_codec: FP16SplitsCompressedTensor  # full local gradient, split per owner
    accumulator: FP16CompressedTensor  # reduced gradient of this shard
    weight: torch.Tensor
    gradient: torch.Tensor
    state: Dict[str, Any]
    rounds: int = 0


class RoundPhase(enum.Enum):
    IDLE = "idle"
    SCATTERED = "scattered"


class ParameterManager(ABC):
    """Interface between the training loop and parameter synchronization"""

    @abstractmethod
    def sync(self, parameters: Optional[List[torch.Tensor]] = None) -> List[torch.Tensor]:
        """Fetch the latest weights into every partition's full vector"""

    @abstractmethod
    def sum_and_update(self, gradients: Sequence[torch.Tensor], update_fn: UpdateFunction):
        """Reduce per-partition gradients and apply `update_fn` per shard"""

    @abstractmethod
    def get_parameter(self) -> torch.Tensor:
        """Assemble the current full weight vector"""

    @abstractmethod
    def get_state(self) -> Dict[str, Any]:
        """Optimizer state table"""


class AllReduceParameterManager(ParameterManager):
    """
    Decentralized parameter synchronization over a block store.

    Example:
        >>> cluster = LocalCluster(num_nodes=2)
        >>> manager = AllReduceParameterManager(torch.zeros(10), cluster, num_shards=4)
        >>> replicas = manager.sync()
        >>> manager.sum_and_update(gradients, update_fn)
        >>> weights = manager.get_parameter()
    """

    def __init__(
        self,
        parameter: torch.Tensor,
        cluster,
        num_shards: Optional[int] = None,
        state: Optional[Dict[str, Any]] = None,
        config: Optional[AllReduceConfig] = None,
        metrics: Optional[Metrics] = None
    ):
        """
        Args:
            parameter: Initial flat parameter vector. Kept as the caller-owned
                output of get_parameter().
            cluster: Compute substrate exposing run_partitions(n, fn)
            num_shards: Number of partitions/shard owners (default: cluster nodes)
            state: Initial optimizer state, cloned into every owner
            config: Engine configuration
            metrics: Where stage timings are recorded
        """
        self.cluster = cluster
        self.config = config or AllReduceConfig()
        self.metrics = metrics or Metrics()
        self.pool = ConcurrencyPool(self.config.pool_size, name="allreduce")

        self.parameter: Optional[torch.Tensor] = None
        self.partitioner: Optional[ShardPartitioner] = None
        self._initial_state = state if state is not None else {}
        self._workers: Dict[int, LocalWorkerState] = {}
        self._round = 0
        self._phase = RoundPhase.IDLE

        self.initialize(parameter, num_shards if num_shards is not None else cluster.num_nodes)

    @property
    def num_shards(self) -> int:
        return self.partitioner.num_shards

    @property
    def round(self) -> int:
        """Number of completed rounds"""
        return self._round

    @property
    def phase(self) -> RoundPhase:
        return self._phase

    def initialize(self, vector: torch.Tensor, num_shards: int):
        """
        Partition `vector` and publish the initial compressed weight shards.

        Args:
            vector: 1-D float32 or float64 tensor
            num_shards: Number of shard owners

        Raises:
            PartitionError: If num_shards > vector length
        """
        if vector.dim() != 1:
            raise ValueError(f"Parameter must be a flat vector, got shape {tuple(vector.shape)}")
        if vector.dtype not in (torch.float32, torch.float64):
            raise ValueError(f"Parameter must be float32 or float64, got {vector.dtype}")
        if num_shards > self.config.max_cluster_size:
            raise ValueError(
                f"Shard count {num_shards} exceeds max cluster size {self.config.max_cluster_size}"
            )

        partitioner = ShardPartitioner(vector.numel(), num_shards)
        initial_state = self._initial_state
        level = self.config.storage_level

        def init_partition(pid: int, exchange: BlockExchange):
            shard = partitioner.get_shard(pid)
            weight = vector[shard.offset:shard.end].clone()
            local = LocalWorkerState(
                shard=shard,
                gradient_codec=FP16SplitsCompressedTensor(vector.numel(), num_shards),
                accumulator=FP16CompressedTensor(shard.length),
                weight=weight,
                gradient=torch.zeros_like(weight),
                state=copy.deepcopy(initial_state),
            )
            exchange.put(BlockId.weight(pid), FP16CompressedTensor.from_tensor(weight).bytes(), level)
            return pid, local

        workers = self.cluster.run_partitions(num_shards, init_partition)

        self.parameter = vector
        self.partitioner = partitioner
        self._workers = dict(workers)
        self._round = 0
        self._phase = RoundPhase.IDLE

        logger.info(
            f"Initialized AllReduce over {vector.numel():,} parameters "
            f"in {num_shards} shards (pool size {self.pool.pool_size})"
        )

    def _fetch_weight_into(self, exchange: BlockExchange, target: torch.Tensor, shard: ShardDescriptor):
        block_id = BlockId.weight(shard.owner_id)
        data = exchange.get(block_id)
        try:
            decompress_bytes_into(data, target, shard.offset, shard.length)
        finally:
            exchange.unlock(block_id, data)

    def sync(self, parameters: Optional[List[torch.Tensor]] = None) -> List[torch.Tensor]:
        """
        Pull the latest published weights into each partition's vector.

        Args:
            parameters: One full-length vector per partition to fill in
                place (allocated when omitted)

        Returns:
            The filled vectors, in partition order

        Raises:
            BlockNotFoundError: If a weight block cannot be fetched
            SerializationError: If a weight block has the wrong size
        """
        length = self.partitioner.length
        if parameters is None:
            parameters = [torch.empty(length, dtype=self.parameter.dtype) for _ in range(self.num_shards)]
        if len(parameters) != self.num_shards:
            raise ValueError(f"Expected {self.num_shards} parameter vectors, got {len(parameters)}")
        for vector in parameters:
            if vector.numel() != length:
                raise ValueError(f"Parameter vector has {vector.numel()} elements, expected {length}")

        metrics = self.metrics
        metrics.reset_samples("sync weight for each node")

        def sync_partition(pid: int, exchange: BlockExchange):
            context = RoundContext(self._round, pid)
            target = parameters[pid]
            with StageTimer(metrics, "worker sync weight average"):
                self.pool.invoke_all([
                    partial(self._fetch_weight_into, exchange, target, shard)
                    for shard in self.partitioner
                ])
            metrics.add_sample("sync weight for each node", context.elapsed_ns())
            return target

        return self.cluster.run_partitions(self.num_shards, sync_partition)

    def scatter(self, gradients: Sequence[torch.Tensor]):
        """
        Phase 1: publish every partition's compressed gradient slices.

        Args:
            gradients: One full-length local gradient per partition

        Raises:
            RoundStateError: If the previous round was not gathered
        """
        if self._phase is not RoundPhase.IDLE:
            raise RoundStateError(
                f"Round {self._round} was scattered but never gathered; "
                f"call gather_and_update() first"
            )
        if len(gradients) != self.num_shards:
            raise ValueError(f"Expected {self.num_shards} gradients, got {len(gradients)}")
        for gradient in gradients:
            if gradient.numel() != self.partitioner.length:
                raise ValueError(
                    f"Gradient has {gradient.numel()} elements, expected {self.partitioner.length}"
                )

        metrics = self.metrics
        level = self.config.storage_level
        metrics.reset_samples("task1 time from worker")

        def scatter_partition(pid: int, exchange: BlockExchange) -> int:
            context = RoundContext(self._round, pid)
            local = self._workers[pid]

            with StageTimer(metrics, "worker prepare parameter"):
                local.gradient_codec.compress(gradients[pid].reshape(-1), pool=self.pool)

            puts = 0
            with StageTimer(metrics, "worker put result"):
                for shard in self.partitioner:
                    exchange.put(
                        BlockId.gradient(pid, shard.owner_id),
                        local.gradient_codec.split_bytes(shard.owner_id),
                        level
                    )
                    puts += 1

            metrics.add("task1 avg time", context.elapsed_ns())
            metrics.add_sample("task1 time from worker", context.elapsed_ns())
            return puts

        with StageTimer(metrics, "task1 time from driver"):
            puts = sum(self.cluster.run_partitions(self.num_shards, scatter_partition))

        expected = self.num_shards * self.num_shards
        if puts != expected:
            raise RoundStateError(f"Scatter published {puts} blocks, expected {expected}")

        self._phase = RoundPhase.SCATTERED
        logger.debug(f"Round {self._round}: scattered {puts} gradient blocks")

    def _fetch_gradient(self, exchange: BlockExchange, sender: int, owner: int, length: int) -> FP16CompressedTensor:
        block_id = BlockId.gradient(sender, owner)
        data = exchange.get(block_id)
        try:
            check_payload(data, length)
            return FP16CompressedTensor.from_bytes(data)
        finally:
            exchange.unlock(block_id, data)

    def _reduce(self, local: LocalWorkerState, blocks: List[FP16CompressedTensor]):
        """Sum `blocks` into the accumulator, range-parallel across the pool"""
        accumulator = local.accumulator
        accumulator.load(blocks[0].bytes())

        def reduce_range(offset: int, length: int):
            for block in blocks[1:]:
                accumulator.add_compressed_delta(block.bytes(offset, length), offset, length)

        self.pool.invoke_all([
            partial(reduce_range, offset, length)
            for offset, length in split_range(local.shard.length, self.pool.pool_size)
        ])

    def gather_and_update(self, update_fn: UpdateFunction):
        """
        Phase 2: reduce each owner's gradient shard, update, republish weights.

        Args:
            update_fn: Update rule applied once per shard

        Raises:
            RoundStateError: If called without a preceding scatter()
            BlockNotFoundError: If a gradient block cannot be fetched
        """
        if self._phase is not RoundPhase.SCATTERED:
            raise RoundStateError("gather_and_update() called before scatter()")

        metrics = self.metrics
        level = self.config.storage_level
        metrics.reset_samples("task2 time from worker")

        def gather_partition(pid: int, exchange: BlockExchange) -> int:
            context = RoundContext(self._round, pid)
            local = self._workers[pid]
            shard = local.shard

            with StageTimer(metrics, "gradient sync average"):
                blocks = self.pool.invoke_all([
                    partial(self._fetch_gradient, exchange, sender, pid, shard.length)
                    for sender in range(self.num_shards)
                ])

            with StageTimer(metrics, "gradient reduce"):
                self._reduce(local, blocks)

            with StageTimer(metrics, "worker gradient extract"):
                local.accumulator.decompress_into(local.gradient)

            with StageTimer(metrics, "worker update"):
                update_fn(local.weight, local.gradient, local.state)

            with StageTimer(metrics, "worker serialize weight"):
                exchange.put(
                    BlockId.weight(pid),
                    FP16CompressedTensor.from_tensor(local.weight).bytes(),
                    level
                )

            local.rounds += 1
            metrics.add_sample("task2 time from worker", context.elapsed_ns())
            return pid

        with StageTimer(metrics, "task2 time from driver"):
            self.cluster.run_partitions(self.num_shards, gather_partition)

        self._phase = RoundPhase.IDLE
        self._round += 1
        logger.debug(f"Round {self._round - 1} complete")

    def sum_and_update(self, gradients: Sequence[torch.Tensor], update_fn: UpdateFunction):
        """
        Run one full round: scatter, then gather and update.

        Args:
            gradients: One full-length local gradient per partition
            update_fn: Update rule applied once per shard
        """
        self.scatter(gradients)
        self.gather_and_update(update_fn)

    def get_parameter(self) -> torch.Tensor:
        """
        Copy every owner's exact weight slice into the caller-owned vector.

        Returns:
            The vector passed to initialize(), now holding current weights

        Raises:
            RoundStateError: If called between scatter() and gather_and_update()
        """
        if self._phase is not RoundPhase.IDLE:
            raise RoundStateError(
                "get_parameter() is undefined between scatter and gather; "
                "finish the round first"
            )

        def fetch_partition(pid: int, exchange: BlockExchange):
            return pid, self._workers[pid].weight.clone()

        for pid, weight in self.cluster.run_partitions(self.num_shards, fetch_partition):
            shard = self.partitioner.get_shard(pid)
            self.parameter[shard.offset:shard.end].copy_(weight)

        return self.parameter

    def get_state(self) -> Dict[str, Any]:
        """
        Optimizer state of shard owner 0.

        Assumes every owner holds equivalent state because update_fn ran
        identically on each summed gradient. This is not verified; use
        get_states() to compare owners.
        """
        return copy.deepcopy(self._workers[0].state)

    def get_states(self) -> List[Dict[str, Any]]:
        """Optimizer state of every shard owner, in owner order"""
        return [copy.deepcopy(self._workers[pid].state) for pid in range(self.num_shards)]

    def close(self):
        self.pool.shutdown()

    def __repr__(self):
        return (f"AllReduceParameterManager(length={self.partitioner.length}, "
                f"shards={self.num_shards}, round={self._round})")
