"""
Error taxonomy for the AllReduce parameter engine.

Every error here is fatal to the current training round. None of them are
retried inside the engine; restarting a failed round is the job scheduler's
business.
"""


class AllReduceError(Exception):
    """Base class for parameter synchronization failures"""


class PartitionError(AllReduceError, ValueError):
    """Shard count cannot be satisfied by the vector length"""


class BlockNotFoundError(AllReduceError, KeyError):
    """Neither a local nor a remote copy of a block is available"""

    def __init__(self, block_id, message: str = ""):
        self.block_id = block_id
        super().__init__(message or f"Can't get the block({block_id})")

    def __str__(self):
        return self.args[0]


class SerializationError(AllReduceError, ValueError):
    """Compressed payload does not match the expected element count"""


class ConcurrencyTaskError(AllReduceError, RuntimeError):
    """A pooled task raised; the whole invocation failed"""

    def __init__(self, message: str, task_index: int = -1):
        self.task_index = task_index
        super().__init__(message)


class RoundStateError(AllReduceError, RuntimeError):
    """Operation called at a point in the round where it is not defined"""
