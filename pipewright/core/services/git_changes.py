"""
Git change source — the change-set and ref for a trigger event.

Used when the caller does not pass changed paths explicitly:

    changed_paths(root, base="origin/main")   →  git diff --name-only base...HEAD
    current_ref(root)                         →  git rev-parse --abbrev-ref HEAD
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from pipewright.core.errors import ConfigError

logger = logging.getLogger(__name__)


def run_git(
    *args: str,
    cwd: Path,
    timeout: int = 15,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the result."""
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def _git_output(*args: str, cwd: Path) -> str:
    try:
        result = run_git(*args, cwd=cwd)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ConfigError(f"git {' '.join(args)} could not run: {e}", detail="git") from e
    if result.returncode != 0:
        raise ConfigError(
            f"git {' '.join(args)} failed: {result.stderr.strip()}",
            detail="git",
        )
    return result.stdout


def changed_paths(root: Path, base: str = "HEAD~1", head: str = "HEAD") -> list[str]:
    """Paths changed between ``base`` and ``head`` (three-dot, merge-base diff).

    Raises:
        ConfigError: If git is missing or the revisions cannot be resolved.
    """
    out = _git_output("diff", "--name-only", f"{base}...{head}", cwd=root)
    paths = [line.strip() for line in out.splitlines() if line.strip()]
    logger.debug("git reports %d changed paths since %s", len(paths), base)
    return paths


def current_ref(root: Path) -> str:
    """The checked-out branch name (``HEAD`` when detached)."""
    return _git_output("rev-parse", "--abbrev-ref", "HEAD", cwd=root).strip()
