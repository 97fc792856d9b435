"""
Parameter synchronization for Legion AllReduce training.
"""

from parameters.allreduce import AllReduceParameterManager, ParameterManager, UpdateFunction
from parameters.config import AllReduceConfig

__version__ = "0.1.0"

__all__ = [
    "AllReduceParameterManager",
    "ParameterManager",
    "UpdateFunction",
    "AllReduceConfig",
]
