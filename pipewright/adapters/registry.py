"""
Job adapter registry.

Jobs name an adapter ("shell" by default); the scheduler hands every
Action to ``execute_action`` and gets a Receipt back. Whatever happens
inside the adapter (a bad command spec, an exception, a dry run) comes
out as a receipt, so a single misbehaving job cannot take the run down.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from pipewright.adapters.base import Adapter, ExecutionContext
from pipewright.core.models.action import Action, Receipt

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Named job adapters plus an optional mock override.

    In mock mode every action goes to the mock adapter when one is set,
    otherwise it succeeds immediately without touching any adapter.
    """

    def __init__(self, mock_mode: bool = False):
        self._by_name: dict[str, Adapter] = {}
        self._mock_mode = mock_mode
        self._mock: Adapter | None = None

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    def set_mock_mode(self, enabled: bool, mock_adapter: Adapter | None = None) -> None:
        self._mock_mode = enabled
        self._mock = mock_adapter

    # ── Registration ────────────────────────────────────────────

    def register(self, adapter: Adapter) -> None:
        if adapter.name in self._by_name:
            logger.warning("Replacing job adapter %r", adapter.name)
        self._by_name[adapter.name] = adapter
        logger.debug("Job adapter %r registered (%s)", adapter.name, type(adapter).__name__)

    def unregister(self, name: str) -> None:
        self._by_name.pop(name, None)

    def get(self, name: str) -> Adapter | None:
        return self._by_name.get(name)

    def list_adapters(self) -> list[str]:
        return sorted(self._by_name)

    def adapter_status(self) -> dict[str, dict[str, Any]]:
        """Probe each adapter; a probe that raises reports unavailable."""
        report: dict[str, dict[str, Any]] = {}
        for name in self.list_adapters():
            adapter = self._by_name[name]
            try:
                ready = bool(adapter.is_available())
            except Exception as e:
                logger.debug("Availability probe for %r raised: %s", name, e)
                ready = False
            report[name] = {"name": name, "available": ready, "type": type(adapter).__name__}
        return report

    # ── Dispatch ────────────────────────────────────────────────

    def execute_action(
        self,
        action: Action,
        project_root: str = ".",
        dry_run: bool = False,
    ) -> Receipt:
        """Run one job action and time it. Never raises."""
        started = time.monotonic()
        receipt = self._dispatch(
            action,
            ExecutionContext(action=action, project_root=project_root, dry_run=dry_run),
        )
        receipt.duration_ms = int((time.monotonic() - started) * 1000)
        return receipt

    def _dispatch(self, action: Action, context: ExecutionContext) -> Receipt:
        if self._mock_mode and self._mock is None:
            return Receipt.success(
                adapter=action.adapter,
                action_id=action.id,
                output=f"[mock] {action.job} executed",
                metadata={"mock": True, "dry_run": context.dry_run},
            )

        adapter = self._mock if self._mock_mode else self._by_name.get(action.adapter)
        if adapter is None:
            return self._failed(action, f"No adapter registered for '{action.adapter}'")

        problem = self._check(adapter, context)
        if problem:
            return self._failed(action, problem)

        if context.dry_run:
            return Receipt.skip(
                adapter=action.adapter,
                action_id=action.id,
                reason=f"[dry-run] {action.job} validated, not executed",
                metadata={"dry_run": True},
            )

        try:
            return adapter.execute(context)
        except Exception as e:
            logger.error("Job %s: adapter %r raised: %s", action.job, adapter.name, e)
            return self._failed(action, f"Adapter raised: {e}")

    @staticmethod
    def _check(adapter: Adapter, context: ExecutionContext) -> str:
        try:
            valid, message = adapter.validate(context)
        except Exception as e:
            return f"Validation error: {e}"
        return "" if valid else f"Validation failed: {message}"

    @staticmethod
    def _failed(action: Action, error: str) -> Receipt:
        return Receipt.failure(adapter=action.adapter, action_id=action.id, error=error)
