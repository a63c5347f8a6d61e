"""Tiered backup archives: production, listing, pinning and verification.

Archives live under ``<root>/<tier>/<name>_<YYYYmmdd-HHMMSS>.<ext>`` with a
``.sha256`` sidecar next to each one. A zero-byte ``.pinned`` sidecar exempts
an archive from retention. The creation time is read back from the file name,
so ordering never depends on filesystem timestamps.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from pathlib import Path

from .archive import (
    ArchiveError,
    checksum_path_for,
    compression_extension,
    compute_checksum,
    create_archive,
    read_checksum_file,
    resolve_algorithm,
    write_checksum_file,
)
from .config import BackupConfig
from .locking import LockManager
from .retention import PruneResult, RetentionEngine
from .snapshots import BackupTarget

LOGGER = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
PIN_SUFFIX = ".pinned"
STAGING_PREFIX = ".stackctl-backup-"

_ARCHIVE_PATTERN = re.compile(
    r"^(?P<name>.+)_(?P<stamp>\d{8}-\d{6})\.(?P<ext>tar(?:\.gz|\.zst)?)$"
)


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupTier(str, Enum):
    """Retention tier assigned to an archive when it is created."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @classmethod
    def parse(cls, value: str | BackupTier) -> BackupTier:
        """Return the tier named *value*."""
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(tier.value for tier in cls)
            raise BackupError(
                f"Unknown backup tier '{value}'. Expected one of: {allowed}."
            ) from None


def classify_tier(day: date, week_end_day: int = 7) -> BackupTier:
    """Return the tier for an archive created on *day*.

    The first of the month is monthly. Otherwise the last day of the week
    (ISO weekday *week_end_day*, Sunday by default) is weekly. Anything else
    is daily.
    """
    if day.day == 1:
        return BackupTier.MONTHLY
    if day.isoweekday() == week_end_day:
        return BackupTier.WEEKLY
    return BackupTier.DAILY


@dataclass(frozen=True, slots=True)
class BackupArtifact:
    """An archive on disk together with its sidecar state."""

    path: Path
    tier: BackupTier
    name: str
    created_at: datetime
    checksum: str | None = None
    pinned: bool = False

    @property
    def checksum_path(self) -> Path:
        """Path of the ``.sha256`` sidecar."""
        return checksum_path_for(self.path)

    @property
    def pin_path(self) -> Path:
        """Path of the ``.pinned`` marker."""
        return self.path.with_name(f"{self.path.name}{PIN_SUFFIX}")

    @property
    def size_bytes(self) -> int | None:
        """Archive size, or None when the file has vanished."""
        try:
            return self.path.stat().st_size
        except OSError:
            return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "tier": self.tier.value,
            "name": self.name,
            "created_at": self.created_at.isoformat().replace("+00:00", "Z"),
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "pinned": self.pinned,
        }


class VerifyStatus(str, Enum):
    """Outcome of a checksum verification."""

    OK = "ok"
    CORRUPT = "corrupt"
    MISSING_CHECKSUM = "missing-checksum"
    MISSING = "missing"


@dataclass(frozen=True, slots=True)
class VerifyResult:
    """Checksum verification result for one archive."""

    path: Path
    status: VerifyStatus
    expected: str | None = None
    actual: str | None = None

    @property
    def ok(self) -> bool:
        """True when the archive matches its recorded checksum."""
        return self.status is VerifyStatus.OK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "status": self.status.value,
            "expected": self.expected,
            "actual": self.actual,
        }


def parse_archive_name(filename: str) -> tuple[str, datetime] | None:
    """Return ``(name, created_at)`` encoded in *filename*, or None."""
    match = _ARCHIVE_PATTERN.match(filename)
    if match is None:
        return None
    try:
        created = datetime.strptime(match["stamp"], TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return None
    return match["name"], created


class ArchiveStore:
    """Read and mutate the tiered archive directory."""

    def __init__(self, root: Path) -> None:
        """Remember the archive root."""
        self.root = Path(root).expanduser()

    def tier_dir(self, tier: str | BackupTier) -> Path:
        """Directory holding archives of *tier*."""
        return self.root / BackupTier.parse(tier).value

    def artifact_for(self, path: Path, tier: str | BackupTier | None = None) -> BackupArtifact:
        """Build an artifact for the archive at *path*."""
        parsed = parse_archive_name(path.name)
        if parsed is None:
            raise BackupError(f"{path.name} is not a recognised backup archive name.")
        resolved_tier = BackupTier.parse(tier if tier is not None else path.parent.name)
        name, created_at = parsed
        try:
            checksum = read_checksum_file(path)
        except ArchiveError as exc:
            raise BackupError(str(exc)) from exc
        return BackupArtifact(
            path=path,
            tier=resolved_tier,
            name=name,
            created_at=created_at,
            checksum=checksum,
            pinned=path.with_name(f"{path.name}{PIN_SUFFIX}").exists(),
        )

    def list_artifacts(self, tier: str | BackupTier | None = None) -> list[BackupArtifact]:
        """Return archives, newest first within each tier."""
        tiers = [BackupTier.parse(tier)] if tier is not None else list(BackupTier)
        artifacts: list[BackupArtifact] = []
        for current in tiers:
            directory = self.tier_dir(current)
            try:
                entries = sorted(directory.iterdir())
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise BackupError(f"Cannot list {directory}: {exc}") from exc
            found = [
                self.artifact_for(entry, current)
                for entry in entries
                if not entry.name.startswith(".")
                and entry.is_file()
                and parse_archive_name(entry.name) is not None
            ]
            found.sort(key=lambda artifact: artifact.created_at, reverse=True)
            artifacts.extend(found)
        return artifacts

    def resolve(self, reference: str | os.PathLike[str]) -> BackupArtifact:
        """Find an archive by path or bare file name."""
        candidate = Path(reference).expanduser()
        if candidate.is_file():
            return self.artifact_for(candidate)
        for artifact in self.list_artifacts():
            if artifact.path.name == candidate.name:
                return artifact
        raise BackupError(f"Backup '{reference}' not found under {self.root}.")

    def pin(self, artifact: BackupArtifact) -> bool:
        """Exempt *artifact* from retention. Returns False if already pinned."""
        if artifact.pin_path.exists():
            return False
        try:
            artifact.pin_path.touch(mode=0o640)
        except OSError as exc:
            raise BackupError(f"Failed to pin {artifact.path.name}: {exc}") from exc
        return True

    def unpin(self, artifact: BackupArtifact) -> bool:
        """Remove the pin from *artifact*. Returns False if it was not pinned."""
        try:
            artifact.pin_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise BackupError(f"Failed to unpin {artifact.path.name}: {exc}") from exc
        return True

    def delete(self, artifact: BackupArtifact) -> list[Path]:
        """Delete an unpinned archive and its checksum sidecar."""
        if artifact.pin_path.exists():
            raise BackupError(f"Refusing to delete pinned backup {artifact.path.name}.")
        removed: list[Path] = []
        for path in (artifact.path, artifact.checksum_path):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise BackupError(f"Failed to delete {path}: {exc}") from exc
            removed.append(path)
        return removed

    def verify(self, path: Path) -> VerifyResult:
        """Recompute the checksum of *path* and compare it with its sidecar."""
        if not path.is_file():
            return VerifyResult(path=path, status=VerifyStatus.MISSING)
        try:
            expected = read_checksum_file(path)
            if not expected:
                return VerifyResult(path=path, status=VerifyStatus.MISSING_CHECKSUM)
            actual = compute_checksum(path)
        except (ArchiveError, OSError) as exc:
            raise BackupError(f"Failed to verify {path}: {exc}") from exc
        status = VerifyStatus.OK if actual == expected else VerifyStatus.CORRUPT
        return VerifyResult(path=path, status=status, expected=expected, actual=actual)

    def update_latest(self, artifact: BackupArtifact) -> Path | None:
        """Point ``latest-<tier>.<ext>`` at *artifact*; failures only warn."""
        extension = artifact.path.name.split(".", 1)[1]
        link = self.root / f"latest-{artifact.tier.value}.{extension}"
        temp_link = self.root / f".{link.name}.tmp"
        target = artifact.path.relative_to(self.root)
        try:
            temp_link.unlink(missing_ok=True)
            os.symlink(target, temp_link)
            os.replace(temp_link, link)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Could not update %s: %s", link, exc)
            temp_link.unlink(missing_ok=True)
            return None
        return link


class BackupProducer:
    """Create one archive per call, atomically."""

    def __init__(
        self,
        config: BackupConfig,
        archive: ArchiveStore | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Bind the producer to the backup configuration."""
        self.config = config
        self.archive = archive or ArchiveStore(config.root)
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def produce(self, target: BackupTarget, *, now: datetime | None = None) -> BackupArtifact:
        """Snapshot *target* into a new archive and return it.

        Snapshot data is staged in a hidden directory inside the tier
        directory and the finished tarball is renamed into place, so a
        failure at any point leaves nothing under a final archive name.
        """
        if not target.sources:
            raise BackupError("No backup sources configured; nothing to archive.")

        moment = now or self._clock()
        # Tiers follow the host's calendar; file names stay in UTC.
        tier = classify_tier(moment.astimezone().date(), self.config.week_end_day)
        algorithm = resolve_algorithm(self.config.compression)
        stem = f"{target.name}_{moment.astimezone(UTC):{TIMESTAMP_FORMAT}}"
        tier_dir = self.archive.tier_dir(tier)
        final_path = tier_dir / f"{stem}.{compression_extension(algorithm)}"

        try:
            if not self.archive.root.exists():
                self.archive.root.mkdir(parents=True)
                os.chmod(self.archive.root, 0o750)
            self.sweep_staging()
            tier_dir.mkdir(parents=True, exist_ok=True)
            if final_path.exists():
                raise BackupError(f"Backup {final_path.name} already exists.")
            staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=tier_dir))
        except OSError as exc:
            raise BackupError(f"Failed to prepare {tier_dir}: {exc}") from exc

        try:
            snapshot_dir = staging / stem
            snapshot_dir.mkdir()
            for source in target.sources:
                LOGGER.info("Capturing %s", source.name)
                try:
                    source.capture(snapshot_dir)
                except Exception as exc:  # noqa: BLE001 - any source failure aborts the archive
                    raise BackupError(f"Snapshot source '{source.name}' failed: {exc}") from exc

            partial = staging / f".{final_path.name}.partial"
            try:
                create_archive(snapshot_dir, partial, algorithm, self.config.compression_level)
                os.replace(partial, final_path)
            except (ArchiveError, OSError) as exc:
                raise BackupError(f"Failed to write archive {final_path.name}: {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        try:
            write_checksum_file(final_path, compute_checksum(final_path))
        except OSError as exc:
            final_path.unlink(missing_ok=True)
            checksum_path_for(final_path).unlink(missing_ok=True)
            raise BackupError(f"Failed to checksum {final_path.name}: {exc}") from exc

        artifact = self.archive.artifact_for(final_path, tier)
        self.archive.update_latest(artifact)
        LOGGER.info("Created %s backup %s", tier.value, final_path)
        return artifact

    def sweep_staging(self) -> list[Path]:
        """Remove staging directories left behind by an interrupted run.

        Callers hold the backup lock, so no live run owns these directories.
        """
        removed: list[Path] = []
        for tier in BackupTier:
            directory = self.archive.tier_dir(tier)
            if not directory.is_dir():
                continue
            for entry in directory.iterdir():
                if entry.name.startswith(STAGING_PREFIX) and entry.is_dir():
                    shutil.rmtree(entry)
                    LOGGER.warning("Removed stale staging directory %s", entry)
                    removed.append(entry)
        return removed


@dataclass(slots=True)
class CycleReport:
    """Result of one scheduled produce-and-prune cycle."""

    artifact: BackupArtifact
    pruned: list[PruneResult] = field(default_factory=list)
    lock_wait_ms: int = 0

    @property
    def errors(self) -> list[str]:
        """Deletion errors collected across tiers."""
        return [error for result in self.pruned for error in result.errors]

    @property
    def deleted(self) -> list[BackupArtifact]:
        """Archives removed by retention during the cycle."""
        return [artifact for result in self.pruned for artifact in result.deleted]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "artifact": self.artifact.to_dict(),
            "pruned": [result.to_dict() for result in self.pruned],
            "lock_wait_ms": self.lock_wait_ms,
        }


class BackupCycle:
    """The single entry point an external scheduler calls."""

    def __init__(
        self,
        producer: BackupProducer,
        retention: RetentionEngine,
        locks: LockManager,
        target: BackupTarget,
        *,
        lock_timeout: float | None = None,
    ) -> None:
        """Wire the producer, retention engine, and backup lock together."""
        self.producer = producer
        self.retention = retention
        self.locks = locks
        self.target = target
        self.lock_timeout = lock_timeout

    def trigger(self) -> CycleReport:
        """Produce one archive, then prune every tier, under the backup lock."""
        with self.locks.backup_lock(timeout=self.lock_timeout) as handle:
            artifact = self.producer.produce(self.target)
            pruned = self.retention.prune_all()
        return CycleReport(artifact=artifact, pruned=pruned, lock_wait_ms=handle.wait_ms)


__all__ = [
    "ArchiveStore",
    "BackupArtifact",
    "BackupCycle",
    "BackupError",
    "BackupProducer",
    "BackupTier",
    "CycleReport",
    "VerifyResult",
    "VerifyStatus",
    "classify_tier",
    "parse_archive_name",
]
