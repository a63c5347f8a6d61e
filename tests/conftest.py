"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import hashlib
import os
from collections.abc import Callable
from pathlib import Path

import pytest


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def make_archive(
    root: Path,
    tier: str,
    stamp: str,
    *,
    name: str = "site",
    pinned: bool = False,
    payload: bytes | None = None,
) -> Path:
    """Create a fake archive (plus checksum sidecar) under *root*/*tier*."""
    directory = root / tier
    directory.mkdir(parents=True, exist_ok=True)
    archive = directory / f"{name}_{stamp}.tar.gz"
    data = payload if payload is not None else f"{tier}-{stamp}".encode()
    archive.write_bytes(data)
    digest = hashlib.sha256(data).hexdigest()
    archive.with_name(f"{archive.name}.sha256").write_text(
        f"{digest}  {archive.name}\n", encoding="utf-8"
    )
    if pinned:
        archive.with_name(f"{archive.name}.pinned").touch()
    return archive


@pytest.fixture()
def archive_factory() -> Callable[..., Path]:
    """Return :func:`make_archive` for tests that seed the backup root."""
    return make_archive
