"""
Status use case — read-only view of recorded runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pipewright.core.errors import PipewrightError
from pipewright.core.models.run import RunRecord
from pipewright.core.persistence.run_store import RunStore
from pipewright.core.use_cases.run import summarize
from pipewright.core.use_cases.session import state_dir_for


@dataclass
class StatusResult:
    runs: list[RunRecord] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error, "error_kind": self.error_kind}
        return {"runs": [summarize(r) for r in self.runs]}


def run_status(
    run_id: str | None = None,
    config_path: Path | None = None,
    limit: int | None = None,
) -> StatusResult:
    """One run by id, or the most recent runs (newest first)."""
    store = RunStore(state_dir_for(config_path))
    result = StatusResult()

    if run_id is None:
        result.runs = store.list_runs(limit=limit)
        return result

    try:
        result.runs = [store.load(run_id)]
    except PipewrightError as e:
        result.error = str(e.to_info())
        result.error_kind = e.kind
    return result
