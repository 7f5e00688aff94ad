"""
Control state for the coordinator.

This package provides the store that holds the emergency-stop flag and the
global request spacing slot, with pluggable backends so the lockout is
visible across coordinator instances.
"""

from .manager import (
    ControlStore,
    ControlStoreFactory,
    EmergencyControl,
    InMemoryControlStore,
    RedisControlStore,
)

__all__ = [
    "ControlStore",
    "ControlStoreFactory",
    "EmergencyControl",
    "InMemoryControlStore",
    "RedisControlStore",
]
