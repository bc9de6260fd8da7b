"""
Action and Receipt models — the job execution contract.

An Action is what the scheduler hands to an external executor for one
activated job: the job name, its command spec and its environment.
A Receipt is what comes back: exit code, artifacts and, for scanning
jobs, structured vulnerability findings. Adapters return receipts,
never exceptions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from pipewright.core.models.job import Finding


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class Action(BaseModel):
    """A job invocation dispatched through the adapter registry."""

    id: str                         # <run_id>:<job_name>
    job: str                        # job name
    adapter: str = "shell"          # which adapter handles this
    command: str = ""               # command spec, opaque to the engine
    env: dict[str, str] = Field(default_factory=dict, repr=False)
    cwd: str | None = None
    timeout: int = 3600
    params: dict[str, Any] = Field(default_factory=dict)


class Receipt(BaseModel):
    """What an adapter reports back for one Action.

    The scheduler reads ``status``, ``exit_code`` and ``findings``; the
    rest is copied onto the job result as-is.
    """

    adapter: str
    action_id: str
    status: Literal["ok", "skipped", "failed"] = "ok"

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    exit_code: int | None = None
    output: str = ""
    error: str | None = None
    artifacts: list[str] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @classmethod
    def success(cls, adapter: str, action_id: str, output: str = "", **fields: Any) -> Receipt:
        fields.setdefault("exit_code", 0)
        return cls(adapter=adapter, action_id=action_id, output=output, **fields)

    @classmethod
    def failure(cls, adapter: str, action_id: str, error: str, **fields: Any) -> Receipt:
        return cls(adapter=adapter, action_id=action_id, status="failed", error=error, **fields)

    @classmethod
    def skip(cls, adapter: str, action_id: str, reason: str = "", **fields: Any) -> Receipt:
        """Nothing ran; ``reason`` lands in ``output``."""
        return cls(adapter=adapter, action_id=action_id, status="skipped", output=reason, **fields)
