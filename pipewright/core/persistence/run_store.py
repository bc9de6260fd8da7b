"""
Run store — one JSON document per run under ``<state_dir>/runs/``.

Writes are atomic (temp file in the same directory, then rename) so a
crash mid-write never leaves a truncated run record. Cancellation is
requested through a ``<run_id>.cancel`` marker next to the record,
which the scheduler polls at stage boundaries.

A request that changes a run outside its scheduler (approve, cancel)
holds the run's claim, a ``<run_id>.lock`` file beside the record, for
the whole load-to-save sequence.
"""

from __future__ import annotations

import json
import logging
import re
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from pipewright.core.errors import RunNotFound, RunStateError, TargetBusy
from pipewright.core.models.run import RunRecord, RunStatus
from pipewright.core.reliability.target_lock import TargetLocks

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".state"
RUNS_DIR = "runs"
LOCKS_DIR = "locks"

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class RunStore:
    """Load and save run records."""

    def __init__(self, state_dir: Path):
        self._state_dir = Path(state_dir)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    @property
    def runs_dir(self) -> Path:
        return self._state_dir / RUNS_DIR

    @property
    def locks_dir(self) -> Path:
        return self._state_dir / LOCKS_DIR

    def path_for(self, run_id: str) -> Path:
        if not _RUN_ID_RE.match(run_id):
            raise RunNotFound(f"Invalid run id: '{run_id}'", detail=run_id)
        return self.runs_dir / f"{run_id}.json"

    def exists(self, run_id: str) -> bool:
        return self.path_for(run_id).is_file()

    def load(self, run_id: str) -> RunRecord:
        """Load a run record.

        Raises:
            RunNotFound: If there is no record, or it cannot be parsed.
        """
        path = self.path_for(run_id)
        if not path.is_file():
            raise RunNotFound(f"No such run: '{run_id}'", detail=run_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return RunRecord.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise RunNotFound(f"Cannot load run '{run_id}': {e}", detail=run_id) from e

    def save(self, record: RunRecord) -> Path:
        """Save a run record (atomic write)."""
        record.touch()
        path = self.path_for(record.run_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = record.model_dump(mode="json")
        content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".run_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            logger.error("Failed to save run %s: %s", record.run_id, e)
            raise
        logger.debug("Run %s saved (%d entries)", record.run_id, len(record.entries))
        return path

    def list_runs(self, limit: int | None = None) -> list[RunRecord]:
        """Runs newest first. Unreadable records are skipped with a warning."""
        if not self.runs_dir.is_dir():
            return []
        records = []
        for path in self.runs_dir.glob("*.json"):
            try:
                records.append(self.load(path.stem))
            except RunNotFound as e:
                logger.warning("Skipping run record %s: %s", path.name, e.message)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit] if limit else records

    # ── Cancellation marker ─────────────────────────────────────────

    def _cancel_path(self, run_id: str) -> Path:
        return self.path_for(run_id).with_suffix(".cancel")

    def request_cancel(self, run_id: str) -> None:
        path = self._cancel_path(run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch()
        logger.info("Cancellation requested for run %s", run_id)

    def cancel_requested(self, run_id: str) -> bool:
        return self._cancel_path(run_id).is_file()

    def clear_cancel(self, run_id: str) -> None:
        self._cancel_path(run_id).unlink(missing_ok=True)

    # ── Claims ──────────────────────────────────────────────────────

    def is_settled(self, run_id: str) -> bool:
        """Whether a run has stopped executing: finished or paused for approval.

        Ids with no readable record (provisioning operations) are never settled.
        """
        try:
            record = self.load(run_id)
        except RunNotFound:
            return False
        return record.status != RunStatus.RUNNING

    @contextmanager
    def claim(self, run_id: str) -> Iterator[None]:
        """Exclusive right to change a run for the duration of the block.

        Raises:
            RunStateError: If another request holds the run.
        """
        self.path_for(run_id)
        owner = f"claim-{uuid.uuid4().hex[:8]}"
        claims = TargetLocks(self.runs_dir)
        try:
            claims.acquire(run_id, owner)
        except TargetBusy as e:
            raise RunStateError(
                f"Run {run_id} is being changed by another request", detail=run_id
            ) from e
        try:
            yield
        finally:
            claims.release(run_id, owner)
