"""
Change detector — which service units a change-set touches.

A unit is affected iff at least one changed path matches at least one
of its globs. Paths matching no unit are recorded but trigger nothing.
Globs use ``fnmatch`` semantics, where ``*`` also crosses ``/`` so
``serviceA/**`` covers everything under ``serviceA/``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from fnmatch import fnmatchcase

logger = logging.getLogger(__name__)


def _normalize(path: str) -> str:
    path = path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def matches_any(path: str, globs: Iterable[str]) -> bool:
    """Whether ``path`` matches at least one glob."""
    path = _normalize(path)
    return any(fnmatchcase(path, _normalize(g)) for g in globs)


@dataclass(frozen=True)
class ChangeReport:
    """Affected units plus the paths that matched no unit."""

    affected: frozenset[str] = frozenset()
    unmatched: frozenset[str] = frozenset()
    by_unit: dict[str, list[str]] = field(default_factory=dict)


def detect_changes(
    change_set: Iterable[str],
    unit_globs: Mapping[str, Iterable[str]],
) -> ChangeReport:
    """Compute affected units and unmatched paths for a change-set."""
    by_unit: dict[str, list[str]] = {}
    unmatched: set[str] = set()

    for raw in sorted(set(change_set)):
        path = _normalize(raw)
        if not path:
            continue
        hit = False
        for unit, globs in unit_globs.items():
            if matches_any(path, globs):
                by_unit.setdefault(unit, []).append(path)
                hit = True
        if not hit:
            unmatched.add(path)

    if unmatched:
        logger.debug("Paths matching no unit: %s", sorted(unmatched))
    logger.info("Affected units: %s", sorted(by_unit) or "none")

    return ChangeReport(
        affected=frozenset(by_unit),
        unmatched=frozenset(unmatched),
        by_unit=by_unit,
    )


def affected_units(
    change_set: Iterable[str],
    unit_globs: Mapping[str, Iterable[str]],
) -> frozenset[str]:
    """The set of unit ids touched by ``change_set``."""
    return detect_changes(change_set, unit_globs).affected
