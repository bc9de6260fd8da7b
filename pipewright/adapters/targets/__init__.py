"""Provisioning targets — the systems provisioning steps observe and mutate."""

from pipewright.adapters.targets.base import ProvisioningTarget
from pipewright.adapters.targets.command import CommandTarget
from pipewright.adapters.targets.memory import MemoryTarget
from pipewright.adapters.targets.pool import TargetPool

__all__ = ["CommandTarget", "MemoryTarget", "ProvisioningTarget", "TargetPool"]
