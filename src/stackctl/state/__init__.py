"""State persistence helpers."""
from __future__ import annotations

from .store import StateStore, StateStoreError

__all__ = ["StateStore", "StateStoreError"]
