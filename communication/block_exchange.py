"""
Block exchange client used by workers to publish and fetch shards.

Wraps the node-local BlockManager with remote access to peer nodes through
a pluggable transport:
- LocalTransport: peers live in the same process (simulation, tests)
- HttpTransport: peers expose their BlockManager through the block server
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Union

import httpx

from core.compression import BytesLike
from core.exceptions import BlockNotFoundError
from communication.block_store import (
    BlockId,
    BlockManager,
    BlockManagerMaster,
    StorageLevel,
    MEMORY_ONLY_SER,
    DEFAULT_MAX_CLUSTER_SIZE,
)


logger = logging.getLogger(__name__)


class BlockTransport(ABC):
    """Moves block payloads between nodes"""

    @abstractmethod
    def fetch(self, node_id: int, block_id: int) -> Optional[bytes]:
        """
        Fetch a block from a node.

        Returns:
            Payload, or None if the node does not hold the block

        Raises:
            BlockNotFoundError: If the node could not be reached
        """

    @abstractmethod
    def push(self, node_id: int, block_id: int, data: BytesLike):
        """Store a copy of a block on a node"""

    @abstractmethod
    def nodes(self) -> List[int]:
        """Ids of every node reachable through this transport"""

    def close(self):
        pass


class LocalTransport(BlockTransport):
    """Transport over BlockManagers living in this process"""

    def __init__(self, managers: Optional[Dict[int, BlockManager]] = None):
        self.managers: Dict[int, BlockManager] = dict(managers or {})

    def register(self, manager: BlockManager):
        self.managers[manager.node_id] = manager

    def fetch(self, node_id: int, block_id: int) -> Optional[bytes]:
        manager = self.managers.get(node_id)
        if manager is None:
            raise BlockNotFoundError(block_id, f"Node {node_id} is not part of the cluster")
        return manager.get_bytes(block_id)

    def push(self, node_id: int, block_id: int, data: BytesLike):
        manager = self.managers.get(node_id)
        if manager is None:
            raise ValueError(f"Node {node_id} is not part of the cluster")
        manager.put_bytes(block_id, data)

    def nodes(self) -> List[int]:
        return sorted(self.managers)


class HttpTransport(BlockTransport):
    """
    Transport over HTTP against each node's block server.

    Transient failures are retried with exponential backoff. A 404 is an
    answer ("not here"), not a failure, and is never retried.
    """

    def __init__(
        self,
        peers: Dict[int, str],
        retry_attempts: int = 3,
        retry_delay: float = 0.1,
        timeout: Optional[float] = None,
        clients: Optional[Dict[int, httpx.Client]] = None
    ):
        """
        Args:
            peers: Mapping of node id to base URL ("http://host:port")
            retry_attempts: Attempts per request before giving up
            retry_delay: Base delay between retries (exponential backoff)
            timeout: Request timeout in seconds (None waits indefinitely)
            clients: Pre-built clients per node (e.g. FastAPI TestClient)
        """
        self.peers = {node_id: url.rstrip('/') for node_id, url in peers.items()}
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._clients: Dict[int, httpx.Client] = dict(clients or {})

    @classmethod
    def from_config(
        cls,
        peers: Dict[int, str],
        config,
        clients: Optional[Dict[int, httpx.Client]] = None
    ) -> 'HttpTransport':
        """Build a transport using the remote fetch policy of an AllReduceConfig"""
        return cls(
            peers,
            retry_attempts=config.remote_retry_attempts,
            retry_delay=config.remote_retry_delay,
            timeout=config.remote_timeout,
            clients=clients
        )

    def _get_client(self, node_id: int) -> httpx.Client:
        """Get or create HTTP client for a node."""
        if node_id not in self._clients:
            if node_id not in self.peers:
                raise ValueError(f"No address known for node {node_id}")
            self._clients[node_id] = httpx.Client(
                base_url=self.peers[node_id],
                timeout=self.timeout
            )
        return self._clients[node_id]

    def _request_with_retry(self, node_id: int, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """
        Make HTTP request with retry logic.

        Raises:
            httpx.HTTPError: If all retry attempts fail
        """
        client = self._get_client(node_id)

        last_exception = None
        for attempt in range(self.retry_attempts):
            try:
                response = client.request(method, endpoint, **kwargs)
                if response.status_code == 404:
                    return response
                response.raise_for_status()
                return response

            except httpx.HTTPError as e:
                last_exception = e
                if attempt < self.retry_attempts - 1:
                    delay = self.retry_delay * (2 ** attempt)  # Exponential backoff
                    logger.warning(
                        f"Request {method} {endpoint} to node {node_id} failed "
                        f"(attempt {attempt + 1}/{self.retry_attempts}): {e}. "
                        f"Retrying in {delay}s..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"Request {method} {endpoint} to node {node_id} failed after "
                        f"{self.retry_attempts} attempts: {e}"
                    )

        raise last_exception

    def fetch(self, node_id: int, block_id: int) -> Optional[bytes]:
        try:
            response = self._request_with_retry(node_id, "GET", f"/blocks/{block_id}")
        except httpx.HTTPError as e:
            raise BlockNotFoundError(
                block_id, f"Can't get the block({block_id}) from node {node_id}: {e}"
            ) from e

        if response.status_code == 404:
            return None
        return response.content

    def push(self, node_id: int, block_id: int, data: BytesLike):
        self._request_with_retry(
            node_id,
            "PUT",
            f"/blocks/{block_id}",
            content=bytes(data),
            headers={"Content-Type": "application/octet-stream"}
        )

    def nodes(self) -> List[int]:
        return sorted(self.peers)

    def close(self):
        for client in self._clients.values():
            client.close()
        self._clients.clear()


class BlockExchange:
    """
    put / get_local / get_remote / unlock against the distributed block store.

    Block ids may be given as BlockId or as already-encoded integers.
    """

    def __init__(
        self,
        manager: BlockManager,
        transport: BlockTransport,
        master: Optional[BlockManagerMaster] = None,
        max_cluster_size: int = DEFAULT_MAX_CLUSTER_SIZE
    ):
        """
        Args:
            manager: This node's BlockManager
            transport: How to reach peer nodes
            master: Location registry; without one every peer is probed
            max_cluster_size: Bound used to encode BlockIds
        """
        self.manager = manager
        self.transport = transport
        self.master = master
        self.max_cluster_size = max_cluster_size

    @property
    def node_id(self) -> int:
        return self.manager.node_id

    def _key(self, block_id: Union[BlockId, int]) -> int:
        if isinstance(block_id, BlockId):
            return block_id.to_numeric(self.max_cluster_size)
        return block_id

    def put(self, block_id: Union[BlockId, int], data: BytesLike, level: StorageLevel = MEMORY_ONLY_SER):
        """
        Publish a block, replacing any existing value under the same id.

        Args:
            block_id: Block to write
            data: Payload
            level: Durability policy; replication > 1 copies to peers
        """
        key = self._key(block_id)
        self.manager.put_bytes(key, data)
        if self.master is not None:
            self.master.set_location(key, self.node_id)

        if level.replication > 1:
            peers = [node for node in self.transport.nodes() if node != self.node_id]
            for peer in peers[:level.replication - 1]:
                self.transport.push(peer, key, data)
                if self.master is not None:
                    self.master.set_location(key, peer, replace=False)

        logger.debug(f"Node {self.node_id} put {block_id} at level {level}")

    def get_local(self, block_id: Union[BlockId, int]) -> Optional[memoryview]:
        """Zero-copy read when the block is resident on this node"""
        return self.manager.get_local(self._key(block_id))

    def get_remote(self, block_id: Union[BlockId, int]) -> bytes:
        """
        Fetch a block over the transport.

        Raises:
            BlockNotFoundError: If no node could supply the block
        """
        key = self._key(block_id)
        if self.master is not None:
            locations = self.master.get_locations(key)
        else:
            locations = self.transport.nodes()

        last_error = None
        for node_id in locations:
            try:
                data = self.transport.fetch(node_id, key)
            except BlockNotFoundError as e:
                last_error = e
                continue
            if data is not None:
                logger.debug(f"Node {self.node_id} fetched {block_id} from node {node_id}")
                return data

        logger.error(f"Node {self.node_id} can't get the block({block_id}) from {locations}")
        raise BlockNotFoundError(block_id) from last_error

    def get(self, block_id: Union[BlockId, int]) -> BytesLike:
        """Local first, else remote. Always pair with unlock()."""
        data = self.get_local(block_id)
        if data is not None:
            return data
        return self.get_remote(block_id)

    def unlock(self, block_id: Union[BlockId, int], data: Optional[BytesLike] = None):
        """
        Release a read lock from get_local; safe when none is held.

        Pass the value returned by get() so a lock on a since-replaced
        payload is never released against its successor.
        """
        self.manager.unlock(self._key(block_id), data)

    def remove(self, block_id: Union[BlockId, int]):
        key = self._key(block_id)
        self.manager.remove(key)
        if self.master is not None:
            self.master.remove_block(key)

    def __repr__(self):
        return f"BlockExchange(node={self.node_id}, transport={type(self.transport).__name__})"
