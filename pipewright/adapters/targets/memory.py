"""
In-memory target — used by mock mode and tests.

Holds one observed-state document per step id. ``apply`` copies the
desired document in, unless a failure has been scripted for that step.
"""

from __future__ import annotations

import threading
from typing import Any

from pipewright.adapters.targets.base import ProvisioningTarget
from pipewright.core.models.provisioning import ApplyResult, ProvisioningStep


class MemoryTarget(ProvisioningTarget):
    def __init__(self, target_id: str = "memory", state: dict[str, dict[str, Any]] | None = None):
        self._id = target_id
        self.state: dict[str, dict[str, Any]] = {k: dict(v) for k, v in (state or {}).items()}
        self.applied: list[str] = []
        self.checked: list[str] = []
        self._failures: dict[str, list[ApplyResult]] = {}
        self._stuck: set[str] = set()
        self._lock = threading.Lock()

    @property
    def target_id(self) -> str:
        return self._id

    def fail_next(
        self,
        step_id: str,
        times: int = 1,
        transient: bool = True,
        diagnostic: str = "scripted failure",
    ) -> None:
        """Make the next ``times`` applies of ``step_id`` fail."""
        queue = self._failures.setdefault(step_id, [])
        queue.extend(
            ApplyResult(ok=False, diagnostic=diagnostic, transient=transient)
            for _ in range(times)
        )

    def never_converge(self, step_id: str) -> None:
        """Applies of ``step_id`` report success but change nothing."""
        self._stuck.add(step_id)

    def check(self, step: ProvisioningStep) -> dict[str, Any]:
        with self._lock:
            self.checked.append(step.id)
            return dict(self.state.get(step.id, {}))

    def apply(self, step: ProvisioningStep) -> ApplyResult:
        with self._lock:
            self.applied.append(step.id)
            queue = self._failures.get(step.id)
            if queue:
                return queue.pop(0)
            if step.id not in self._stuck:
                current = self.state.setdefault(step.id, {})
                current.update(step.desired)
            return ApplyResult(ok=True, diagnostic=f"applied {step.id}")
