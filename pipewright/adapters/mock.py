"""
In-process stand-in for the shell adapter.

Every job succeeds unless a failure or a findings report was scripted
for its name. Scheduler waves run jobs on worker threads, so the call
log is guarded by a lock.
"""

from __future__ import annotations

import threading
from typing import Any

from pipewright.adapters.base import Adapter, ExecutionContext
from pipewright.core.models.action import Receipt
from pipewright.core.models.job import Finding


class MockAdapter(Adapter):
    def __init__(self, adapter_name: str = "mock", available: bool = True):
        self._adapter_name = adapter_name
        self._up = available
        self._scripted: dict[str, dict[str, Any]] = {}
        self._seen: list[ExecutionContext] = []
        self._guard = threading.Lock()

    @property
    def name(self) -> str:
        return self._adapter_name

    @property
    def call_log(self) -> list[ExecutionContext]:
        """Contexts received so far, in arrival order."""
        return list(self._seen)

    @property
    def call_count(self) -> int:
        return len(self._seen)

    @property
    def executed_jobs(self) -> list[str]:
        return [ctx.action.job for ctx in self._seen]

    def is_available(self) -> bool:
        return self._up

    def set_failure(self, job: str, error: str = "Mock failure", exit_code: int = 1) -> None:
        self._scripted[job] = {"status": "failed", "error": error, "exit_code": exit_code}

    def set_findings(self, job: str, findings: list[Finding]) -> None:
        """Let ``job`` succeed with a findings report attached."""
        self._scripted[job] = {"exit_code": 0, "findings": list(findings)}

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        action = context.action
        with self._guard:
            self._seen.append(context)
            scripted = self._scripted.get(action.job)
        fields = dict(scripted) if scripted else {"exit_code": 0, "metadata": {"mock": True}}
        fields.setdefault("output", f"[mock] {action.job}")
        return Receipt(adapter=self._adapter_name, action_id=action.id, **fields)

    def reset(self) -> None:
        with self._guard:
            self._seen.clear()
            self._scripted.clear()
