"""
HTTP server — Flask app factory for the trigger, approval and run API.

JSON only: version-control hooks post trigger events, approvers post
approval signals, dashboards poll run status.
"""

from __future__ import annotations

import logging
from pathlib import Path

from flask import Flask

from pipewright.adapters.registry import AdapterRegistry
from pipewright.adapters.targets.pool import TargetPool

logger = logging.getLogger(__name__)


def create_app(
    config_path: Path,
    mock_mode: bool = False,
    registry: AdapterRegistry | None = None,
    targets: TargetPool | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        config_path: Path to pipeline.yml.
        mock_mode: Mock job adapters and in-memory targets.
        registry: Job adapter registry shared by every request.
        targets: Target pool shared by every request.
    """
    app = Flask(__name__)

    app.config["CONFIG_PATH"] = str(config_path)
    app.config["MOCK_MODE"] = mock_mode
    app.config["REGISTRY"] = registry
    app.config["TARGETS"] = targets or (TargetPool(config_path.parent, mock=True) if mock_mode else None)

    from pipewright.ui.web.routes_runs import runs_bp

    app.register_blueprint(runs_bp, url_prefix="/api")

    logger.info("API app created (config=%s)", config_path)
    return app


def run_server(
    app: Flask,
    host: str = "127.0.0.1",
    port: int = 8000,
    debug: bool = False,
) -> None:
    """Run the Flask development server."""
    logger.info("Starting API on %s:%d", host, port)
    app.run(host=host, port=port, debug=debug, use_reloader=False)
