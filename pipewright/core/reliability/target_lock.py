"""
Target locks — one provisioning plan per target at a time.

Two layers:
    - an in-process ``threading.Lock`` per target (parallel deploy jobs)
    - a lock file ``<state_dir>/locks/<target>.lock`` created with
      O_CREAT|O_EXCL (concurrent processes). Its first line is the
      owning run id, its second ``<pid>@<host>`` of the owning process.

A busy target is rejected with TargetBusy, or waited on for up to
``timeout`` seconds first. Never retried silently beyond that.

A lock file is stale, and reclaimed with a warning, when its owning
process on this host is gone or when ``holder_settled`` reports that
the holder run is no longer running.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from pipewright.core.errors import TargetBusy

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


def _safe_name(target_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", target_id)


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TargetLocks:
    """Per-target mutual exclusion registry.

    Args:
        lock_dir: Where lock files live; None keeps locks in-process only.
        holder_settled: Given a holder id, whether that run has stopped
            running (finished, paused, or unknown to the store).
    """

    def __init__(
        self,
        lock_dir: Path | None = None,
        holder_settled: Callable[[str], bool] | None = None,
    ) -> None:
        self._lock_dir = lock_dir
        self._holder_settled = holder_settled
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, target_id: str) -> threading.Lock:
        with self._guard:
            if target_id not in self._locks:
                self._locks[target_id] = threading.Lock()
            return self._locks[target_id]

    def lock_path(self, target_id: str) -> Path | None:
        if self._lock_dir is None:
            return None
        return self._lock_dir / f"{_safe_name(target_id)}.lock"

    def _read(self, target_id: str) -> str | None:
        path = self.lock_path(target_id)
        if path is None or not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            return None

    def holder(self, target_id: str) -> str | None:
        """Run id holding the target's lock file, if any."""
        content = self._read(target_id)
        if not content:
            return None
        return content.splitlines()[0].strip() or None

    def _stale_reason(self, content: str) -> str:
        lines = content.splitlines()
        holder = lines[0].strip() if lines else ""
        owner = lines[1].strip() if len(lines) > 1 else ""

        pid, _, host = owner.partition("@")
        if pid.isdigit() and host == socket.gethostname() and not _process_alive(int(pid)):
            return f"process {pid} of run {holder} is gone"
        if holder and self._holder_settled is not None and self._holder_settled(holder):
            return f"run {holder} is no longer running"
        return ""

    def _reclaim_if_stale(self, target_id: str) -> bool:
        content = self._read(target_id)
        if content is None:
            return True
        reason = self._stale_reason(content)
        if not reason:
            return False
        # Only remove the file we judged; another process may have replaced it.
        if self._read(target_id) == content:
            logger.warning("Reclaiming stale lock on '%s': %s", target_id, reason)
            self.lock_path(target_id).unlink(missing_ok=True)
        return True

    def _try_file(self, target_id: str, run_id: str) -> bool:
        path = self.lock_path(target_id)
        if path is None:
            return True
        path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._reclaim_if_stale(target_id):
                    return False
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{run_id}\n{os.getpid()}@{socket.gethostname()}\n")
            return True
        return False

    def acquire(self, target_id: str, run_id: str, timeout: float = 0.0) -> None:
        """Take the target for ``run_id``.

        Raises:
            TargetBusy: If the target is still held after ``timeout`` seconds.
        """
        lock = self._lock_for(target_id)
        deadline = time.monotonic() + max(timeout, 0.0)

        if timeout > 0:
            acquired = lock.acquire(timeout=timeout)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            raise TargetBusy(
                f"Target '{target_id}' is busy (held in this process)",
                detail=target_id,
            )

        while not self._try_file(target_id, run_id):
            if time.monotonic() >= deadline:
                lock.release()
                holder = self.holder(target_id) or "unknown"
                raise TargetBusy(
                    f"Target '{target_id}' is busy (held by run {holder})",
                    detail=target_id,
                )
            time.sleep(_POLL_INTERVAL)

        logger.debug("Target '%s' locked by %s", target_id, run_id)

    def release(self, target_id: str, run_id: str) -> None:
        path = self.lock_path(target_id)
        if path is not None and self.holder(target_id) == run_id:
            path.unlink(missing_ok=True)
        lock = self._lock_for(target_id)
        if lock.locked():
            lock.release()
        logger.debug("Target '%s' released by %s", target_id, run_id)

    @contextmanager
    def hold(self, target_id: str, run_id: str, timeout: float = 0.0) -> Iterator[None]:
        """Context manager around acquire/release."""
        self.acquire(target_id, run_id, timeout=timeout)
        try:
            yield
        finally:
            self.release(target_id, run_id)
