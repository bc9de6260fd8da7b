"""
Command target — observe and converge a target through shell commands.

Each step supplies its own commands:
    check  — prints the observed state as a JSON object on stdout
    apply  — converges the target; exit code 0 means success

Commands see the target through environment variables:
    PIPEWRIGHT_TARGET, PIPEWRIGHT_TARGET_ADDRESS, PIPEWRIGHT_STEP,
    PIPEWRIGHT_DESIRED (JSON), plus the target's declared ``env``.

A timeout, or an exit code listed in the step's ``transient_exit_codes``
(75 / EX_TEMPFAIL by default), is transient. Any other non-zero exit is
fatal.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from typing import Any

from pipewright.adapters.targets.base import ProvisioningTarget
from pipewright.core.errors import FatalInfraError, TransientInfraError
from pipewright.core.models.provisioning import ApplyResult, ProvisioningStep, TargetSpec

logger = logging.getLogger(__name__)

_TAIL = 2000


class CommandTarget(ProvisioningTarget):
    def __init__(self, spec: TargetSpec, cwd: str = ".", secret_env: dict[str, str] | None = None):
        self._spec = spec
        self._cwd = cwd
        self._secret_env = secret_env or {}

    @property
    def target_id(self) -> str:
        return self._spec.name

    def _env(self, step: ProvisioningStep) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self._spec.env)
        env.update(self._secret_env)
        env["PIPEWRIGHT_TARGET"] = self._spec.name
        env["PIPEWRIGHT_TARGET_ADDRESS"] = self._spec.address
        env["PIPEWRIGHT_STEP"] = step.id
        env["PIPEWRIGHT_DESIRED"] = json.dumps(step.desired, sort_keys=True)
        return env

    def _run(self, command: str, step: ProvisioningStep) -> subprocess.CompletedProcess[str]:
        logger.debug("[%s] %s: %s", self.target_id, step.id, command)
        return subprocess.run(
            command,
            shell=True,
            cwd=self._cwd,
            env=self._env(step),
            capture_output=True,
            text=True,
            timeout=step.timeout,
        )

    def check(self, step: ProvisioningStep) -> dict[str, Any]:
        if not step.check:
            return {}

        try:
            result = self._run(step.check, step)
        except subprocess.TimeoutExpired as e:
            raise TransientInfraError(
                f"check timed out after {step.timeout}s", detail=step.id
            ) from e
        except OSError as e:
            raise FatalInfraError(f"check could not run: {e}", detail=step.id) from e

        if result.returncode != 0:
            message = f"check exited {result.returncode}: {result.stderr.strip()[-_TAIL:]}"
            if result.returncode in step.transient_exit_codes:
                raise TransientInfraError(message, detail=step.id)
            raise FatalInfraError(message, detail=step.id)

        out = result.stdout.strip()
        if not out:
            return {}
        try:
            observed = json.loads(out)
        except json.JSONDecodeError as e:
            raise FatalInfraError(f"check output is not JSON: {e}", detail=step.id) from e
        if not isinstance(observed, dict):
            raise FatalInfraError("check output is not a JSON object", detail=step.id)
        return observed

    def apply(self, step: ProvisioningStep) -> ApplyResult:
        if not step.apply:
            return ApplyResult(ok=False, diagnostic="step has no apply command")

        try:
            result = self._run(step.apply, step)
        except subprocess.TimeoutExpired:
            return ApplyResult(
                ok=False,
                diagnostic=f"apply timed out after {step.timeout}s",
                transient=True,
            )
        except OSError as e:
            return ApplyResult(ok=False, diagnostic=f"apply could not run: {e}")

        if result.returncode == 0:
            return ApplyResult(ok=True, diagnostic=result.stdout.strip()[-_TAIL:])

        return ApplyResult(
            ok=False,
            diagnostic=f"apply exited {result.returncode}: {result.stderr.strip()[-_TAIL:]}",
            transient=result.returncode in step.transient_exit_codes,
        )
