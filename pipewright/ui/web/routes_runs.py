"""
Run routes — trigger, approve, cancel and inspect runs.

    GET  /api/runs                     recent runs (?limit=N)
    GET  /api/runs/<run_id>            one run
    POST /api/triggers                 {ref, changes, trigger, environment, dry_run}
    POST /api/runs/<run_id>/approvals  {job, approver}
    POST /api/runs/<run_id>/cancel

Triggers and approvals execute synchronously; the response carries the
run as it stands when the scheduler stops (settled or paused).
"""

from __future__ import annotations

import logging
from pathlib import Path

from flask import Blueprint, current_app, jsonify, request
from pydantic import ValidationError

logger = logging.getLogger(__name__)

runs_bp = Blueprint("runs", __name__)

# Error kind → HTTP status
_ERROR_STATUS = {
    "RunNotFound": 404,
    "RunStateError": 409,
    "ConfigError": 422,
    "TemplateError": 422,
    "CycleError": 422,
    "RuleEvaluationError": 422,
}


def _config_path() -> Path:
    return Path(current_app.config["CONFIG_PATH"])


def _collaborators() -> dict:
    return {
        "config_path": _config_path(),
        "mock_mode": current_app.config.get("MOCK_MODE", False),
        "registry": current_app.config.get("REGISTRY"),
        "targets": current_app.config.get("TARGETS"),
    }


def _error_response(result, default: int = 400):  # type: ignore[no-untyped-def]
    code = _ERROR_STATUS.get(result.error_kind or "", default)
    return jsonify(result.to_dict()), code


# ── Read ────────────────────────────────────────────────────────────


@runs_bp.route("/runs")
def api_runs():  # type: ignore[no-untyped-def]
    """Recent runs, newest first."""
    from pipewright.core.use_cases.status import run_status

    limit = request.args.get("limit", default=20, type=int)
    result = run_status(config_path=_config_path(), limit=limit)
    return jsonify(result.to_dict())


@runs_bp.route("/runs/<run_id>")
def api_run(run_id: str):  # type: ignore[no-untyped-def]
    """One run, with every job result and step outcome."""
    from pipewright.core.use_cases.run import summarize
    from pipewright.core.use_cases.status import run_status

    result = run_status(run_id, config_path=_config_path())
    if result.error:
        return _error_response(result)
    return jsonify({"run": summarize(result.runs[0])})


# ── Write ───────────────────────────────────────────────────────────


@runs_bp.route("/triggers", methods=["POST"])
def api_trigger():  # type: ignore[no-untyped-def]
    """Start a run from a trigger event."""
    from pipewright.core.models.run import TriggerEvent
    from pipewright.core.use_cases.run import start_run

    data = request.get_json(silent=True) or {}
    try:
        event = TriggerEvent.model_validate(
            {k: data[k] for k in ("ref", "changes", "trigger") if k in data}
        )
    except ValidationError as e:
        return jsonify({"error": f"Invalid trigger event: {e.errors()[0]['msg']}"}), 400

    result = start_run(
        event,
        environment=data.get("environment"),
        dry_run=bool(data.get("dry_run", False)),
        **_collaborators(),
    )
    if result.error and result.error_kind in _ERROR_STATUS:
        return _error_response(result)
    return jsonify(result.to_dict()), 201


@runs_bp.route("/runs/<run_id>/approvals", methods=["POST"])
def api_approve(run_id: str):  # type: ignore[no-untyped-def]
    """Release a manual-pending job."""
    from pipewright.core.models.run import ApprovalSignal
    from pipewright.core.use_cases.approve import approve_run

    data = request.get_json(silent=True) or {}
    try:
        signal = ApprovalSignal.model_validate({**data, "run_id": run_id})
    except ValidationError as e:
        return jsonify({"error": f"Invalid approval: {e.errors()[0]['msg']}"}), 400

    result = approve_run(signal, **_collaborators())
    if result.error:
        return _error_response(result)
    return jsonify(result.to_dict())


@runs_bp.route("/runs/<run_id>/cancel", methods=["POST"])
def api_cancel(run_id: str):  # type: ignore[no-untyped-def]
    """Cancel a run at its next stage boundary."""
    from pipewright.core.use_cases.cancel import cancel_run

    result = cancel_run(run_id, config_path=_config_path())
    if result.error:
        return _error_response(result)
    return jsonify(result.to_dict()), 202
