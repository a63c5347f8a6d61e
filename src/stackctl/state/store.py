"""Durable key/value store backing setup progress and site settings.

The state file (``/var/lib/stackctl/setup_state`` by default) is plain text
with one ``KEY=value`` pair per line. Blank lines and ``#`` comments are
ignored and a missing file reads as empty state. Every mutation rewrites the
whole file into a temporary sibling, fsyncs it, and swaps it into place with
``os.replace`` so readers never observe a half-written value.

Failing to persist is fatal: without durable completion markers the
orchestrator cannot make safe progress, so errors surface immediately as
:class:`StateStoreError` rather than being retried.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")


class StateStoreError(RuntimeError):
    """Raised when the state file cannot be read or written."""


def validate_key(key: str) -> str:
    """Return *key* if it is a legal state key, else raise."""
    if not isinstance(key, str) or not _KEY_PATTERN.match(key):
        raise StateStoreError(f"Invalid state key {key!r}.")
    return key


def parse_state(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines into an ordered mapping (last write wins)."""
    entries: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = raw_line.partition("=")
        key = key.strip()
        if not sep or not _KEY_PATTERN.match(key):
            LOGGER.debug("Ignoring malformed state line: %r", raw_line)
            continue
        entries[key] = value
    return entries


def render_state(entries: dict[str, str]) -> str:
    """Serialise *entries* back to ``KEY=value`` lines."""
    return "".join(f"{key}={value}\n" for key, value in entries.items())


@dataclass(frozen=True)
class StateStore:
    """Flat, durable ``KEY=value`` store."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the path after initialisation."""
        object.__setattr__(self, "path", Path(self.path).expanduser())

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------
    def exists(self, key: str) -> bool:
        """Return True when *key* has a recorded value (even an empty one)."""
        return validate_key(key) in self._read()

    def load(self, key: str, default: str = "") -> str:
        """Return the value stored for *key*, or *default* when absent."""
        return self._read().get(validate_key(key), default)

    def save(self, key: str, value: str) -> None:
        """Create or overwrite *key* with *value*."""
        validate_key(key)
        text = str(value)
        if "\n" in text or "\r" in text:
            raise StateStoreError(f"State value for {key} must not contain newlines.")
        entries = self._read()
        if key in entries and entries[key] == text:
            return
        entries[key] = text
        self._write(entries)
        LOGGER.debug("State saved: %s", key)

    def remove(self, key: str) -> None:
        """Delete *key*; absent keys are ignored."""
        entries = self._read()
        if validate_key(key) not in entries:
            return
        del entries[key]
        self._write(entries)
        LOGGER.debug("State removed: %s", key)

    def items(self) -> dict[str, str]:
        """Return a snapshot of every recorded key in file order."""
        return self._read()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _read(self) -> dict[str, str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StateStoreError(f"Failed to read state file {self.path}: {exc}") from exc
        return parse_state(text)

    def _write(self, entries: dict[str, str]) -> None:
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{self.path.name}.")
        except OSError as exc:
            raise StateStoreError(f"State directory {directory} is not writable: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(render_state(entries))
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, self.path)
            _fsync_directory(directory)
        except OSError as exc:
            raise StateStoreError(f"Failed to write state file {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


__all__ = ["StateStore", "StateStoreError", "parse_state", "render_state", "validate_key"]
