"""Tarball and checksum helpers used by the backup producer."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path

CHECKSUM_SUFFIX = ".sha256"


class ArchiveError(RuntimeError):
    """Raised when an archive or checksum cannot be produced."""


def detect_zstd_support() -> bool:
    """Return True when both tar and zstd binaries are available."""
    return shutil.which("tar") is not None and shutil.which("zstd") is not None


def resolve_algorithm(configured: str) -> str:
    """Turn the configured compression (which may be ``auto``) into a concrete one."""
    if configured == "auto":
        return "zstd" if detect_zstd_support() else "gzip"
    return configured


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    if algorithm == "zstd":
        return "tar.zst"
    return "tar"


def create_archive(
    source_dir: Path,
    archive_path: Path,
    algorithm: str,
    compression_level: int | None,
) -> None:
    """Create an archive of *source_dir* at *archive_path*.

    The archive holds a single top-level directory named after *source_dir*.
    """
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create archives.")

    env = os.environ.copy()
    cmd: list[str] = [tar_bin]

    if algorithm == "gzip":
        cmd.extend(["-czf", str(archive_path)])
        if compression_level is not None:
            env["GZIP"] = f"-{compression_level}"
    elif algorithm == "zstd":
        cmd.extend(["--zstd", "-cf", str(archive_path)])
        if compression_level is not None:
            env["ZSTD_CLEVEL"] = str(compression_level)
    else:
        cmd.extend(["-cf", str(archive_path)])

    cmd.extend(["-C", str(source_dir.parent), source_dir.name])

    result = subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        env=env,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the ``<archive>.sha256`` sidecar path."""
    return archive_path.with_name(f"{archive_path.name}{CHECKSUM_SUFFIX}")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def read_checksum_file(archive_path: Path) -> str | None:
    """Return the hex digest recorded in the sidecar, or None when absent."""
    checksum_path = checksum_path_for(archive_path)
    try:
        text = checksum_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ArchiveError(f"Cannot read checksum file {checksum_path}: {exc}") from exc
    first = text.split(maxsplit=1)
    return first[0].lower() if first else ""


__all__ = [
    "ArchiveError",
    "CHECKSUM_SUFFIX",
    "checksum_path_for",
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "detect_zstd_support",
    "read_checksum_file",
    "resolve_algorithm",
    "write_checksum_file",
]
