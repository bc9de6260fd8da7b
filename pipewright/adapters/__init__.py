"""Adapters — bindings to the external job executors and provisioning targets.

Public re-exports for convenient access.
"""

from pipewright.adapters.base import Adapter, ExecutionContext
from pipewright.adapters.mock import MockAdapter
from pipewright.adapters.registry import AdapterRegistry

__all__ = [
    "Adapter",
    "AdapterRegistry",
    "ExecutionContext",
    "MockAdapter",
]
