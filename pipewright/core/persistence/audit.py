"""
Audit ledger — one NDJSON line per run operation.

Every start, approval, cancellation and provisioning apply appends a
summary line to ``<state_dir>/audit.ndjson``. The ledger is
append-only; lines are never rewritten.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from pipewright.core.models.job import JobStatus
from pipewright.core.models.run import RunRecord

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_FILE = "audit.ndjson"


class AuditEntry(BaseModel):
    """A single audit line."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    operation: str = ""            # run, approve, cancel, provision

    pipeline: str = ""
    ref: str = ""
    environment: str = ""
    units_affected: list[str] = Field(default_factory=list)

    status: str = ""
    jobs_total: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_skipped: int = 0
    jobs_manual_pending: int = 0

    errors: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_run(cls, record: RunRecord, operation: str, **context: Any) -> AuditEntry:
        """Summarize a run record."""
        results = record.job_results().values()

        def count(status: JobStatus) -> int:
            return sum(1 for r in results if r.status == status)

        errors = [str(r.error) for r in results if r.error is not None]
        if record.error is not None:
            errors.insert(0, str(record.error))

        return cls(
            run_id=record.run_id,
            operation=operation,
            pipeline=record.pipeline,
            ref=record.ref,
            environment=record.environment,
            units_affected=list(record.affected_units),
            status=record.status.value,
            jobs_total=len(results),
            jobs_succeeded=count(JobStatus.SUCCEEDED),
            jobs_failed=count(JobStatus.FAILED),
            jobs_skipped=count(JobStatus.SKIPPED),
            jobs_manual_pending=count(JobStatus.MANUAL_PENDING),
            errors=errors,
            context=context,
        )


class AuditWriter:
    """Append-only audit ledger writer."""

    def __init__(self, path: Path | None = None, state_dir: Path | None = None):
        if path is not None:
            self._path = path
        elif state_dir is not None:
            self._path = state_dir / DEFAULT_AUDIT_FILE
        else:
            self._path = Path(".state") / DEFAULT_AUDIT_FILE

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        """Append one entry. A ledger write failure is logged, not raised."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"

        try:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Audit entry written: %s/%s", entry.operation, entry.run_id)
        except OSError as e:
            logger.error("Failed to write audit entry: %s", e)

    def read_all(self) -> list[AuditEntry]:
        """All entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        entries = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(AuditEntry.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning("Skipping corrupt audit entry at line %d: %s", line_num, e)
        return entries

    def read_recent(self, n: int = 20) -> list[AuditEntry]:
        return self.read_all()[-n:]
