"""
Target pool — builds provisioning targets from their declarations.

In mock mode every target is an in-memory one, kept for the life of
the pool so a second apply in the same process sees the first one's
state.
"""

from __future__ import annotations

from pathlib import Path

from pipewright.adapters.targets.base import ProvisioningTarget
from pipewright.adapters.targets.command import CommandTarget
from pipewright.adapters.targets.memory import MemoryTarget
from pipewright.core.config.variables import SecretResolver, VariableSet
from pipewright.core.models.provisioning import TargetSpec


class TargetPool:
    def __init__(
        self,
        project_root: Path | str = ".",
        secret_resolver: SecretResolver | None = None,
        mock: bool = False,
    ):
        self._project_root = str(project_root)
        self._secret_resolver = secret_resolver
        self._mock = mock
        self._memory: dict[str, MemoryTarget] = {}

    def memory(self, name: str) -> MemoryTarget:
        """The in-memory target for ``name`` (created on first use)."""
        if name not in self._memory:
            self._memory[name] = MemoryTarget(name)
        return self._memory[name]

    def __call__(self, spec: TargetSpec, variables: VariableSet) -> ProvisioningTarget:
        if self._mock or spec.kind == "memory":
            return self.memory(spec.name)
        return CommandTarget(
            spec,
            cwd=self._project_root,
            secret_env=variables.as_environment(self._secret_resolver),
        )
