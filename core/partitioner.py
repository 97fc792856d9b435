"""
Shard Partitioner for AllReduce parameter synchronization

This module splits one flat parameter vector across a fixed number of
shard owners. Each owner is responsible for reducing the gradients of its
shard and updating the matching weight slice during training.
"""

from dataclasses import dataclass
from typing import List, Tuple

from core.exceptions import PartitionError


@dataclass(frozen=True)
class ShardDescriptor:
    """Contiguous slice of the parameter vector owned by a single worker"""
    owner_id: int
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length

    def __repr__(self):
        return (f"ShardDescriptor(owner={self.owner_id}, "
                f"range=[{self.offset}, {self.end}))")


def shard_bounds(index: int, length: int, parts: int) -> Tuple[int, int]:
    """
    Compute (offset, length) of piece `index` in a near-even split.

    The first `length % parts` pieces get one extra element.
    """
    base = length // parts
    extra = length % parts
    offset = index * base + min(index, extra)
    size = base + (1 if index < extra else 0)
    return offset, size


def split_range(length: int, parts: int) -> List[Tuple[int, int]]:
    """
    Split [0, length) into at most `parts` non-empty contiguous pieces.

    Unlike ShardPartitioner this tolerates parts > length: only `length`
    pieces of one element are produced in that case. Used to fan a shard
    out over a worker pool.

    Returns:
        List of (offset, length) tuples in ascending order
    """
    if parts < 1:
        raise ValueError(f"parts must be positive, got {parts}")
    if length <= 0:
        return []
    available = min(parts, length)
    base = length // parts
    extra = length % parts
    pieces = []
    for index in range(available):
        offset = index * base + min(index, extra)
        size = base + (1 if index < extra else 0)
        pieces.append((offset, size))
    return pieces


class ShardPartitioner:
    """
    Partitions a flat parameter vector across shard owners.

    Shards are contiguous, ascending by owner id and differ in length by at
    most one element. Extra elements go to the lowest ids. The split is a
    pure function of (length, num_shards), so every worker computes the same
    layout without talking to anyone.
    """

    def __init__(self, length: int, num_shards: int):
        """
        Args:
            length: Number of elements in the parameter vector
            num_shards: Number of shard owners to split across
        """
        if num_shards < 1:
            raise PartitionError(f"Shard count must be positive, got {num_shards}")
        if num_shards > length:
            raise PartitionError(
                f"parameter length ({length}) should not be less than "
                f"shard count ({num_shards})"
            )

        self.length = length
        self.num_shards = num_shards
        self.shards: List[ShardDescriptor] = []

        self._create_shards()

    def _create_shards(self):
        for owner_id in range(self.num_shards):
            offset, size = shard_bounds(owner_id, self.length, self.num_shards)
            self.shards.append(ShardDescriptor(owner_id, offset, size))

    def get_shard(self, owner_id: int) -> ShardDescriptor:
        """Get the shard for a specific owner id"""
        if owner_id < 0 or owner_id >= self.num_shards:
            raise ValueError(f"Shard {owner_id} out of range (max: {self.num_shards - 1})")
        return self.shards[owner_id]

    def shard_of(self, index: int) -> ShardDescriptor:
        """Find the shard holding element `index`"""
        if index < 0 or index >= self.length:
            raise ValueError(f"Index {index} out of range [0, {self.length})")

        base = self.length // self.num_shards
        extra = self.length % self.num_shards
        boundary = extra * (base + 1)
        if index < boundary:
            return self.shards[index // (base + 1)]
        return self.shards[extra + (index - boundary) // base]

    def __len__(self):
        return self.num_shards

    def __iter__(self):
        return iter(self.shards)

    def print_partition_info(self):
        """Print information about the partitioning"""
        print(f"\n{'='*60}")
        print(f"Shard Partitioning Summary")
        print(f"{'='*60}")
        print(f"Vector length: {self.length:,}")
        print(f"Number of shards: {self.num_shards}")
        print(f"Base shard length: {self.length // self.num_shards:,}")
        print(f"\nShard Details:")
        print(f"{'-'*60}")

        for shard in self.shards:
            print(f"Owner {shard.owner_id}: [{shard.offset:,}, {shard.end:,}) "
                  f"({shard.length / self.length * 100:.1f}%)")
        print()
