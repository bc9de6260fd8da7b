"""
Shell command adapter — run a job's command and capture the outcome.

Exit code 0 is success, anything else is failure. Jobs that declare a
findings report (``findings: reports/scan.json``) have it parsed after
the command runs; it must hold a JSON list of ``{id, severity}``
objects, or an object with such a list under ``"findings"``. A declared
report that is missing fails the job.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from functools import partial
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pipewright.adapters.base import Adapter, ExecutionContext
from pipewright.core.models.action import Receipt
from pipewright.core.models.job import Finding

logger = logging.getLogger(__name__)

_TAIL = 4000


def load_findings(path: Path) -> list[Finding]:
    """Parse a findings report.

    Raises:
        ValueError: If the report is not valid JSON in a supported shape.
    """
    data: Any = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("findings", [])
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of findings in {path}")
    try:
        return [Finding.model_validate(item) for item in data]
    except ValidationError as e:
        raise ValueError(f"Invalid finding in {path}: {e}") from e


class ShellCommandAdapter(Adapter):
    """Execute a job command through the shell.

    Action params:
        findings (str): Optional findings report path, relative to the
            working directory.
    """

    @property
    def name(self) -> str:
        return "shell"

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        if not context.action.command:
            return False, "Missing job command"

        cwd = context.working_dir
        if cwd and not Path(cwd).is_dir():
            return False, f"Working directory does not exist: {cwd}"

        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        action = context.action
        cwd = context.working_dir
        receipt = partial(Receipt, adapter=self.name, action_id=action.id)

        # Command only: the environment may hold secrets.
        logger.debug("Job %s in %s: %s", action.job, cwd, action.command)
        try:
            proc = subprocess.run(
                action.command,
                shell=True,
                cwd=cwd,
                env={**os.environ, **action.env},
                capture_output=True,
                text=True,
                timeout=action.timeout,
            )
        except subprocess.TimeoutExpired:
            return receipt(status="failed", error=f"Command timed out after {action.timeout}s")
        except OSError as e:
            return receipt(status="failed", error=f"Could not start command: {e}")

        stdout, stderr = proc.stdout.strip()[-_TAIL:], proc.stderr.strip()[-_TAIL:]
        if proc.returncode:
            return receipt(
                status="failed",
                exit_code=proc.returncode,
                output=stdout,
                error=stderr or f"Command exited with code {proc.returncode}",
            )

        report = action.params.get("findings")
        if not report:
            return receipt(exit_code=0, output=stdout, metadata={"stderr": stderr} if stderr else {})

        path = Path(cwd) / report
        if not path.is_file():
            logger.error("Job %s: declared findings report %s was not written", action.job, path)
            return receipt(
                status="failed",
                exit_code=0,
                output=stdout,
                error=f"Findings report not found: {report}",
            )
        try:
            findings = load_findings(path)
        except (OSError, ValueError) as e:
            return receipt(status="failed", exit_code=0, output=stdout, error=f"Invalid findings report: {e}")

        return receipt(
            exit_code=0,
            output=stdout,
            findings=findings,
            artifacts=[report],
            metadata={"stderr": stderr} if stderr else {},
        )
