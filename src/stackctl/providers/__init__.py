"""Provider interfaces for stackctl."""
from __future__ import annotations

from .commands import (
    CommandError,
    CommandRunner,
    state_environment,
    wait_for_command,
    wait_for_port,
)

__all__ = [
    "CommandError",
    "CommandRunner",
    "state_environment",
    "wait_for_command",
    "wait_for_port",
]
