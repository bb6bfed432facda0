"""Model stores and optimizers."""

from .sgd import SGDConfig, SGDEntry, SGDModel, SGDOptimizer, SGDStateError
from .sgd_common import CheckpointFormatError, CheckpointRecord

__all__ = [
    "CheckpointFormatError",
    "CheckpointRecord",
    "SGDConfig",
    "SGDEntry",
    "SGDModel",
    "SGDOptimizer",
    "SGDStateError",
]
