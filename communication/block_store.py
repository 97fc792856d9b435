"""
Distributed named-block byte store.

Each node runs a BlockManager holding byte payloads under numeric block
ids. A BlockManagerMaster tracks which nodes hold which ids so that peers
can fetch remotely. Values are round-scoped: they are republished every
round and never need to survive a node failure.
"""

import enum
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from core.compression import BytesLike


logger = logging.getLogger(__name__)


DEFAULT_MAX_CLUSTER_SIZE = 10000


class BlockKind(enum.Enum):
    """What a block carries"""
    WEIGHT = "weight"
    GRADIENT = "gradient"


@dataclass(frozen=True)
class BlockId:
    """
    Deterministic key into the block store.

    WEIGHT blocks are keyed by the shard owner; GRADIENT blocks by
    (sender, receiver). The numeric form is injective for ids below
    `max_cluster_size`:

        WEIGHT(owner)              -> max_cluster_size + owner
        GRADIENT(sender, receiver) -> receiver + sender * max_cluster_size * 10
    """
    kind: BlockKind
    owner: int
    receiver: Optional[int] = None

    @classmethod
    def weight(cls, owner: int) -> 'BlockId':
        return cls(BlockKind.WEIGHT, owner)

    @classmethod
    def gradient(cls, sender: int, receiver: int) -> 'BlockId':
        return cls(BlockKind.GRADIENT, sender, receiver)

    def __post_init__(self):
        if self.kind is BlockKind.GRADIENT and self.receiver is None:
            raise ValueError("Gradient block id needs a receiver")
        if self.kind is BlockKind.WEIGHT and self.receiver is not None:
            raise ValueError("Weight block id takes no receiver")

    def to_numeric(self, max_cluster_size: int = DEFAULT_MAX_CLUSTER_SIZE) -> int:
        """Encode as a single non-negative integer"""
        for value in (self.owner, self.receiver):
            if value is not None and not 0 <= value < max_cluster_size:
                raise ValueError(
                    f"Worker id {value} outside [0, {max_cluster_size}) in {self}"
                )

        if self.kind is BlockKind.WEIGHT:
            return max_cluster_size + self.owner
        return self.receiver + self.owner * max_cluster_size * 10

    @classmethod
    def from_numeric(cls, value: int, max_cluster_size: int = DEFAULT_MAX_CLUSTER_SIZE) -> 'BlockId':
        """Decode a value produced by to_numeric"""
        if value < 0:
            raise ValueError(f"Block id must be non-negative, got {value}")
        if max_cluster_size <= value < 2 * max_cluster_size:
            return cls.weight(value - max_cluster_size)

        sender, receiver = divmod(value, max_cluster_size * 10)
        if receiver >= max_cluster_size:
            raise ValueError(f"{value} is not a valid block id for cluster size {max_cluster_size}")
        return cls.gradient(sender, receiver)

    def __str__(self):
        if self.kind is BlockKind.WEIGHT:
            return f"weight_{self.owner}"
        return f"gradient_{self.owner}_{self.receiver}"


@dataclass(frozen=True)
class StorageLevel:
    """Durability policy for a put"""
    use_memory: bool = True
    serialized: bool = True
    replication: int = 1

    def __str__(self):
        suffix = f"_{self.replication}" if self.replication > 1 else ""
        return f"MEMORY_ONLY{'_SER' if self.serialized else ''}{suffix}"


# Ephemeral, memory only, non-replicated. What the parameter engine uses.
MEMORY_ONLY_SER = StorageLevel()
MEMORY_ONLY_SER_2 = StorageLevel(replication=2)


class BlockManager:
    """
    Node-local block storage.

    Payloads are stored as immutable bytes, so handing out memoryviews for
    local reads is zero-copy and safe even if the block is replaced while a
    reader still holds the view. Read locks only track outstanding readers
    and are counted per payload: replacing a block drops the old payload's
    locks, and releasing a view of the old payload never touches the new one.
    """

    def __init__(self, node_id: int):
        """
        Args:
            node_id: Identifier of the node this manager lives on
        """
        self.node_id = node_id
        self._blocks: Dict[int, bytes] = {}
        # block id -> (payload the locks were taken on, reader count)
        self._read_locks: Dict[int, Tuple[bytes, int]] = {}
        self._lock = threading.Lock()

    def put_bytes(self, block_id: int, data: BytesLike):
        """Store `data`, replacing any existing value (last writer wins)"""
        if data is None:
            raise ValueError("Bytes is null")
        # Always a fresh object, so read locks can tell payloads apart
        payload = bytes(memoryview(data))
        with self._lock:
            self._remove_locked(block_id)
            self._blocks[block_id] = payload
        logger.debug(f"Node {self.node_id} stored block {block_id} ({len(payload)} bytes)")

    def get_local(self, block_id: int) -> Optional[memoryview]:
        """
        Zero-copy read. Acquires a read lock that the caller should release
        with unlock(); returns None when the block is not resident.
        """
        with self._lock:
            payload = self._blocks.get(block_id)
            if payload is None:
                return None
            _, readers = self._read_locks.get(block_id, (payload, 0))
            self._read_locks[block_id] = (payload, readers + 1)
        return memoryview(payload)

    def get_bytes(self, block_id: int) -> Optional[bytes]:
        """Payload for serving to a remote reader, no lock taken"""
        with self._lock:
            return self._blocks.get(block_id)

    def unlock(self, block_id: int, data: Optional[BytesLike] = None):
        """
        Release one read lock; no-op when none is held.

        Args:
            block_id: Block to release
            data: The view returned by get_local. When given, the lock is
                only released if that view still refers to the current
                payload. Without it the current payload's lock is released.
        """
        with self._lock:
            entry = self._read_locks.get(block_id)
            if entry is None:
                return
            payload, readers = entry
            if data is not None:
                source = data.obj if isinstance(data, memoryview) else data
                if source is not payload:
                    return
            if readers > 1:
                self._read_locks[block_id] = (payload, readers - 1)
            else:
                del self._read_locks[block_id]

    def remove(self, block_id: int) -> bool:
        with self._lock:
            return self._remove_locked(block_id)

    def _remove_locked(self, block_id: int) -> bool:
        existed = self._blocks.pop(block_id, None) is not None
        _, readers = self._read_locks.pop(block_id, (None, 0))
        if readers:
            logger.debug(f"Block {block_id} replaced with {readers} outstanding reader(s)")
        return existed

    def contains(self, block_id: int) -> bool:
        with self._lock:
            return block_id in self._blocks

    def read_lock_count(self, block_id: int) -> int:
        """Outstanding readers of the current payload"""
        with self._lock:
            return self._read_locks.get(block_id, (None, 0))[1]

    def block_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._blocks)

    def clear(self):
        with self._lock:
            self._blocks.clear()
            self._read_locks.clear()

    def __len__(self):
        with self._lock:
            return len(self._blocks)

    def __repr__(self):
        return f"BlockManager(node={self.node_id}, blocks={len(self)})"


class BlockManagerMaster:
    """
    Cluster-wide registry of block locations.

    Only locations are tracked here; payloads always live on the nodes.
    """

    def __init__(self):
        self._locations: Dict[int, Set[int]] = defaultdict(set)
        self._lock = threading.Lock()

    def set_location(self, block_id: int, node_id: int, replace: bool = True):
        """Record that `node_id` holds `block_id`, dropping older locations by default"""
        with self._lock:
            if replace:
                self._locations[block_id] = {node_id}
            else:
                self._locations[block_id].add(node_id)

    def get_locations(self, block_id: int) -> List[int]:
        with self._lock:
            return sorted(self._locations.get(block_id, ()))

    def remove_block(self, block_id: int):
        with self._lock:
            self._locations.pop(block_id, None)
