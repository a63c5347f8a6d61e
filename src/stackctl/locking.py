"""Advisory file locks guarding the state file and the backup archive.

Each scope (``orchestration``, ``backup``) maps to one lock file under the
runtime directory. Locks are taken with ``fcntl.flock`` so they only exclude
cooperating stackctl processes, and they are released automatically when the
holding process exits. Lock files persist after release and carry JSON
metadata about the last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

ORCHESTRATION_SCOPE = "orchestration"
BACKUP_SCOPE = "backup"

_SCOPE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")


class LockError(RuntimeError):
    """Raised when lock files cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is held by another process beyond the timeout."""

    def __init__(self, scope: str, path: Path, timeout: float, holder: dict[str, object]):
        """Describe the busy lock, including the recorded holder if known."""
        self.scope = scope
        self.path = path
        self.timeout = timeout
        self.holder = holder
        detail = f" (held by pid {holder['pid']})" if holder.get("pid") else ""
        super().__init__(
            f"Lock '{scope}' is busy{detail}; gave up after {timeout:g}s waiting on {path}."
        )


@dataclass(slots=True)
class LockHandle:
    """Details about a held lock."""

    scope: str
    path: Path
    wait_ms: int


class LockManager:
    """Acquire scoped advisory locks with a bounded wait."""

    def __init__(
        self,
        lock_dir: Path,
        default_timeout: float = 30.0,
        *,
        poll_interval: float = 0.05,
    ) -> None:
        """Remember the lock directory and timing defaults."""
        self.lock_dir = Path(lock_dir).expanduser()
        self.default_timeout = float(default_timeout)
        self.poll_interval = poll_interval

    def path_for(self, scope: str) -> Path:
        """Return the lock file path for *scope*."""
        if not _SCOPE_PATTERN.match(scope):
            raise LockError(f"Invalid lock scope '{scope}'.")
        return self.lock_dir / f"{scope}.lock"

    @contextmanager
    def acquire(self, scope: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock for *scope* for the duration of the block."""
        path = self.path_for(scope)
        effective_timeout = self.default_timeout if timeout is None else float(timeout)
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Failed to open lock file {path}: {exc}") from exc

        try:
            started = time.monotonic()
            deadline = started + effective_timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(
                            scope, path, effective_timeout, _read_holder(path)
                        ) from None
                    time.sleep(self.poll_interval)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, scope, path)
            try:
                yield LockHandle(scope=scope, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def orchestration_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Lock guarding the setup state file."""
        return self.acquire(ORCHESTRATION_SCOPE, timeout=timeout)

    def backup_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Lock guarding the backup archive directory."""
        return self.acquire(BACKUP_SCOPE, timeout=timeout)


def _write_metadata(fd: int, scope: str, path: Path) -> None:
    payload = {
        "scope": scope,
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace(
            "+00:00", "Z"
        ),
    }
    data = (json.dumps(payload) + "\n").encode("utf-8")
    try:
        os.ftruncate(fd, 0)
        os.pwrite(fd, data, 0)
        os.fsync(fd)
    except OSError:
        # Metadata is diagnostic; the flock is what excludes.
        pass


def _read_holder(path: Path) -> dict[str, object]:
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


__all__ = [
    "BACKUP_SCOPE",
    "ORCHESTRATION_SCOPE",
    "LockError",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
]
