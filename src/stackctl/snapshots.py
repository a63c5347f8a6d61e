"""Snapshot sources that feed the backup producer.

A source writes its part of a backup into a staging directory. The producer
only cares whether ``capture`` returns or raises.
"""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from .config import BackupConfig
from .providers.commands import CommandRunner, state_environment
from .state.store import StateStore

LOGGER = logging.getLogger(__name__)


class SnapshotError(RuntimeError):
    """Raised when a snapshot source cannot capture its data."""


@runtime_checkable
class SnapshotSource(Protocol):
    """Something that can write its data into a staging directory."""

    name: str

    def capture(self, dest: Path) -> None:
        """Write this source's data beneath *dest*."""


@dataclass(frozen=True, slots=True)
class BackupTarget:
    """What one backup run captures, and the name its archives carry."""

    name: str
    sources: tuple[SnapshotSource, ...]


def copy_into(source: Path, destination: Path) -> None:
    """Copy or mirror *source* into *destination*."""
    if source.is_dir():
        shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)


@dataclass(frozen=True, slots=True)
class FileTreeSource:
    """Copy configured paths under ``files/``, keeping their absolute layout."""

    paths: tuple[Path, ...]
    name: str = "files"

    def capture(self, dest: Path) -> None:
        root = dest / "files"
        root.mkdir(parents=True, exist_ok=True)
        for path in self.paths:
            if not path.exists():
                raise SnapshotError(f"Backup path {path} does not exist.")
            resolved = path.resolve()
            relative = resolved.relative_to(resolved.anchor)
            try:
                copy_into(resolved, root / relative)
            except (OSError, shutil.Error) as exc:
                raise SnapshotError(f"Failed to copy {path}: {exc}") from exc
            LOGGER.debug("Captured %s", path)


@dataclass(frozen=True, slots=True)
class CommandDumpSource:
    """Write the stdout of a dump command (e.g. ``mysqldump``) to a file."""

    command: str
    runner: CommandRunner
    store: StateStore
    filename: str = "database.sql"
    name: str = "database"

    def capture(self, dest: Path) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        target = dest / self.filename
        size = self.runner.run_to_file(
            self.command,
            target,
            env=state_environment(self.store.items()),
        )
        if size == 0 and not self.runner.dry_run:
            raise SnapshotError(f"Dump command produced no output for {self.filename}.")
        LOGGER.debug("Captured %s (%d bytes)", self.filename, size)


def build_target(
    config: BackupConfig,
    store: StateStore,
    runner: CommandRunner | None = None,
) -> BackupTarget:
    """Return the backup target described by ``backups.sources``."""
    sources: list[SnapshotSource] = []
    if config.sources.database_command:
        sources.append(
            CommandDumpSource(
                command=config.sources.database_command,
                runner=runner or CommandRunner(),
                store=store,
            )
        )
    if config.sources.paths:
        sources.append(FileTreeSource(paths=config.sources.paths))
    return BackupTarget(name=config.name, sources=tuple(sources))


__all__ = [
    "BackupTarget",
    "CommandDumpSource",
    "FileTreeSource",
    "SnapshotError",
    "SnapshotSource",
    "build_target",
    "copy_into",
]
