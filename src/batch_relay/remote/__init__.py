"""Concrete remote-operation backends."""

from .simulated import SimulatedOperations
from .subprocess_ops import SubprocessOperations

__all__ = [
    "SimulatedOperations",
    "SubprocessOperations",
]
