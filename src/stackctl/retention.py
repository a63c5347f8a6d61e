"""Per-tier retention for backup archives.

For each tier the newest ``keep_count`` unpinned archives are kept and the
rest are deleted oldest first, each together with its checksum sidecar.
Pinned archives are set aside before candidates are chosen and are never
counted against ``keep_count``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .config import BACKUP_TIERS, RetentionConfig

if TYPE_CHECKING:
    from .backups import ArchiveStore, BackupArtifact

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PruneResult:
    """What a prune kept, skipped, and removed for one tier."""

    tier: str
    keep_count: int
    dry_run: bool = False
    kept: list[BackupArtifact] = field(default_factory=list)
    pinned: list[BackupArtifact] = field(default_factory=list)
    deleted: list[BackupArtifact] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when every selected archive was removed."""
        return not self.errors

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "tier": self.tier,
            "keep_count": self.keep_count,
            "dry_run": self.dry_run,
            "kept": [str(artifact.path) for artifact in self.kept],
            "pinned": [str(artifact.path) for artifact in self.pinned],
            "deleted": [str(artifact.path) for artifact in self.deleted],
            "errors": list(self.errors),
        }


class RetentionEngine:
    """Apply a :class:`RetentionConfig` to an :class:`ArchiveStore`."""

    def __init__(self, archive: ArchiveStore, policy: RetentionConfig) -> None:
        """Bind the engine to the archive and keep counts."""
        self.archive = archive
        self.policy = policy

    def prune(self, tier: str, *, dry_run: bool = False) -> PruneResult:
        """Delete unpinned archives in *tier* beyond its keep count.

        Deletion errors are collected on the result and the remaining
        candidates are still processed.
        """
        keep = self.policy.keep_count(str(tier))
        result = PruneResult(tier=str(tier), keep_count=keep, dry_run=dry_run)

        unpinned: list[BackupArtifact] = []
        for artifact in self.archive.list_artifacts(tier):
            (result.pinned if artifact.pinned else unpinned).append(artifact)
        unpinned.sort(key=lambda artifact: artifact.created_at, reverse=True)

        result.kept = unpinned[:keep]
        candidates = sorted(unpinned[keep:], key=lambda artifact: artifact.created_at)

        for artifact in candidates:
            if dry_run:
                result.deleted.append(artifact)
                continue
            try:
                self.archive.delete(artifact)
            except RuntimeError as exc:
                LOGGER.warning("Could not remove %s: %s", artifact.path, exc)
                result.errors.append(f"{artifact.path.name}: {exc}")
                continue
            LOGGER.info("Pruned %s backup %s", result.tier, artifact.path.name)
            result.deleted.append(artifact)
        return result

    def prune_all(self, *, dry_run: bool = False) -> list[PruneResult]:
        """Prune every tier in turn."""
        return [self.prune(tier, dry_run=dry_run) for tier in BACKUP_TIERS]


__all__ = ["PruneResult", "RetentionEngine"]
