"""
Configuration for the AllReduce parameter engine.

Pool size and cluster-size bound can be overridden from the environment so
that the same job definition can be tuned per deployment.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from core.concurrency import default_pool_size
from communication.block_store import StorageLevel, MEMORY_ONLY_SER, DEFAULT_MAX_CLUSTER_SIZE


POOL_SIZE_ENV = "LEGION_ALLREDUCE_POOL_SIZE"
MAX_CLUSTER_SIZE_ENV = "LEGION_ALLREDUCE_MAX_CLUSTER_SIZE"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


@dataclass
class AllReduceConfig:
    """
    Configuration for AllReduce parameter synchronization.

    Covers the worker pool, block id space, store durability, remote fetch
    policy and logging.
    """

    # Concurrency
    pool_size: int = field(default_factory=lambda: _env_int(POOL_SIZE_ENV, default_pool_size()))

    # Block ids
    max_cluster_size: int = field(
        default_factory=lambda: _env_int(MAX_CLUSTER_SIZE_ENV, DEFAULT_MAX_CLUSTER_SIZE)
    )

    # Block store
    storage_level: StorageLevel = MEMORY_ONLY_SER
    remote_retry_attempts: int = 3
    remote_retry_delay: float = 0.1  # seconds, doubled per attempt
    remote_timeout: Optional[float] = None  # None waits indefinitely

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    log_file: Optional[str] = None

    def __post_init__(self):
        """Validate settings."""
        if self.pool_size < 1:
            raise ValueError(f"pool_size must be positive, got {self.pool_size}")
        if self.max_cluster_size < 1:
            raise ValueError(f"max_cluster_size must be positive, got {self.max_cluster_size}")
        if self.remote_retry_attempts < 1:
            raise ValueError(
                f"remote_retry_attempts must be positive, got {self.remote_retry_attempts}"
            )
        if isinstance(self.storage_level, dict):
            self.storage_level = StorageLevel(**self.storage_level)
        self.log_level = self.log_level.upper()

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert config to dictionary.

        Returns:
            Configuration as dictionary
        """
        return {
            'pool_size': self.pool_size,
            'max_cluster_size': self.max_cluster_size,
            'storage_level': {
                'use_memory': self.storage_level.use_memory,
                'serialized': self.storage_level.serialized,
                'replication': self.storage_level.replication,
            },
            'remote_retry_attempts': self.remote_retry_attempts,
            'remote_retry_delay': self.remote_retry_delay,
            'remote_timeout': self.remote_timeout,
            'log_level': self.log_level,
            'log_file': self.log_file,
        }

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'AllReduceConfig':
        return cls(**config_dict)

    @classmethod
    def from_json_file(cls, path: str) -> 'AllReduceConfig':
        """
        Load config from JSON file.

        Args:
            path: Path to JSON config file

        Returns:
            AllReduceConfig instance
        """
        with open(path, 'r') as f:
            config_dict = json.load(f)
        return cls.from_dict(config_dict)

    def to_json_file(self, path: str):
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def __repr__(self) -> str:
        return (
            f"AllReduceConfig(pool_size={self.pool_size}, "
            f"max_cluster_size={self.max_cluster_size}, "
            f"storage_level={self.storage_level})"
        )


def setup_logging(config: AllReduceConfig):
    """Configure root logging from `config`"""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(level=config.log_level, format=LOG_FORMAT, handlers=handlers)
    logging.getLogger().setLevel(config.log_level)
