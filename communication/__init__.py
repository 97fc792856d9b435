"""
Communication module for Legion AllReduce.

Provides the block store and its transports used to exchange shards:
- BlockManager: node-local named byte blocks
- BlockExchange: put / get_local / get_remote / unlock for workers
- Block server: HTTP surface of a node's BlockManager
"""

from communication.block_store import (
    BlockId,
    BlockKind,
    BlockManager,
    BlockManagerMaster,
    StorageLevel,
    MEMORY_ONLY_SER,
    MEMORY_ONLY_SER_2,
)
from communication.block_exchange import BlockExchange, LocalTransport, HttpTransport

__version__ = "0.1.0"

__all__ = [
    "BlockId",
    "BlockKind",
    "BlockManager",
    "BlockManagerMaster",
    "StorageLevel",
    "MEMORY_ONLY_SER",
    "MEMORY_ONLY_SER_2",
    "BlockExchange",
    "LocalTransport",
    "HttpTransport",
]
