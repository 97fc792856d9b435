"""
Single-machine simulation of the distributed compute substrate.

A LocalCluster stands in for the engine that schedules one task per
partition: it owns a set of nodes, each with its own BlockManager, and runs
a closure once per partition on the node that partition is pinned to.
"""

import logging
from typing import Callable, List, Optional, TypeVar

from core.concurrency import ConcurrencyPool
from communication.block_exchange import BlockExchange, LocalTransport
from communication.block_store import BlockManager, BlockManagerMaster
from parameters.config import AllReduceConfig


logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocalCluster:
    """
    In-process cluster of block-store nodes.

    Partition `pid` always runs on node `pid % num_nodes`, so every block a
    partition publishes lands on the same node round after round.
    """

    def __init__(self, num_nodes: int = 1, config: Optional[AllReduceConfig] = None):
        """
        Args:
            num_nodes: Number of simulated nodes
            config: Configuration shared by every node's BlockExchange
        """
        if num_nodes < 1:
            raise ValueError(f"num_nodes must be positive, got {num_nodes}")

        self.num_nodes = num_nodes
        self.config = config or AllReduceConfig()
        self.master = BlockManagerMaster()
        self.transport = LocalTransport()
        self.managers: List[BlockManager] = []
        self.exchanges: List[BlockExchange] = []

        for node_id in range(num_nodes):
            manager = BlockManager(node_id)
            self.transport.register(manager)
            self.managers.append(manager)
            self.exchanges.append(BlockExchange(
                manager,
                self.transport,
                master=self.master,
                max_cluster_size=self.config.max_cluster_size
            ))

        logger.info(f"Started local cluster with {num_nodes} node(s)")

    def node_of(self, partition_id: int) -> int:
        return partition_id % self.num_nodes

    def exchange_for(self, partition_id: int) -> BlockExchange:
        """BlockExchange of the node partition `partition_id` runs on"""
        return self.exchanges[self.node_of(partition_id)]

    def run_partitions(self, num_partitions: int, fn: Callable[[int, BlockExchange], T]) -> List[T]:
        """
        Run `fn(pid, exchange)` once per partition, all partitions in parallel.

        Args:
            num_partitions: Number of partitions
            fn: Closure executed for each partition

        Returns:
            Per-partition results in partition order

        Raises:
            Whatever a partition raised; the job fails as a whole
        """
        if num_partitions < 1:
            raise ValueError(f"num_partitions must be positive, got {num_partitions}")

        with ConcurrencyPool(pool_size=num_partitions, name="cluster") as pool:
            return pool.invoke_all([
                (lambda pid=pid: fn(pid, self.exchange_for(pid)))
                for pid in range(num_partitions)
            ])

    def block_count(self) -> int:
        """Number of blocks resident across all nodes"""
        return sum(len(manager) for manager in self.managers)

    def __repr__(self):
        return f"LocalCluster(nodes={self.num_nodes}, blocks={self.block_count()})"
