"""
Provisioning target protocol.

    check(step) -> observed state document (a dict)
    apply(step) -> ApplyResult {ok, diagnostic, transient}

``check`` may raise TransientInfraError or FatalInfraError when the
target cannot be observed at all. ``apply`` reports failure through
its result.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pipewright.core.models.provisioning import ApplyResult, ProvisioningStep


class ProvisioningTarget(ABC):
    """A host or container set that provisioning steps converge."""

    @property
    @abstractmethod
    def target_id(self) -> str:
        """Stable identifier, also the mutual-exclusion key."""

    @abstractmethod
    def check(self, step: ProvisioningStep) -> dict[str, Any]:
        """Observe the state relevant to ``step``."""

    @abstractmethod
    def apply(self, step: ProvisioningStep) -> ApplyResult:
        """Converge the target towards ``step.desired``."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} target_id={self.target_id!r}>"
