"""Sharded factorization-machine parameter store with an FTRL/adagrad optimizer."""

from .model import SGDConfig, SGDEntry, SGDModel, SGDOptimizer, SGDStateError

__version__ = "0.1.0"

__all__ = [
    "SGDConfig",
    "SGDEntry",
    "SGDModel",
    "SGDOptimizer",
    "SGDStateError",
    "__version__",
]
