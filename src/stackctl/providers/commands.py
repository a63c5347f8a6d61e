"""Shell command execution and readiness polling for provisioning actions."""
from __future__ import annotations

import logging
import os
import re
import socket
import subprocess
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

STATE_ENV_PREFIX = "STACK_STATE_"

_ENV_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


class CommandError(RuntimeError):
    """Raised when a command fails, times out, or a wait expires."""


def state_environment(entries: Mapping[str, str]) -> dict[str, str]:
    """Map state entries to ``STACK_STATE_<KEY>`` environment variables."""
    return {
        f"{STATE_ENV_PREFIX}{_ENV_UNSAFE.sub('_', key).upper()}": value
        for key, value in entries.items()
    }


@dataclass(slots=True)
class CommandRunner:
    """Run shell snippets through a configured shell."""

    shell: str = "/bin/sh"
    base_env: Mapping[str, str] | None = None
    dry_run: bool = False
    history: list[str] = field(default_factory=list, repr=False)

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
        error_prefix: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* and return the completed process."""
        args = [self.shell, "-c", command]
        self.history.append(command)
        if self.dry_run:
            return subprocess.CompletedProcess(args, returncode=0, stdout="", stderr="")
        prefix = error_prefix or f"Command '{_abbreviate(command)}'"
        LOGGER.debug("Running: %s", command)
        try:
            result = subprocess.run(  # noqa: S603 - operator-configured commands
                args,
                capture_output=True,
                text=True,
                env=self._environment(env),
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"Shell {self.shell} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"{prefix} timed out after {timeout:g}s.") from exc
        if result.stdout:
            LOGGER.debug("stdout: %s", result.stdout.rstrip())
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "no output"
            raise CommandError(f"{prefix} failed (exit {result.returncode}): {message}")
        return result

    def run_to_file(
        self,
        command: str,
        destination: Path,
        *,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> int:
        """Stream the stdout of *command* into *destination*; return bytes written."""
        args = [self.shell, "-c", command]
        self.history.append(command)
        if self.dry_run:
            return 0
        prefix = f"Command '{_abbreviate(command)}'"
        try:
            with destination.open("wb") as handle:
                result = subprocess.run(  # noqa: S603 - operator-configured commands
                    args,
                    stdout=handle,
                    stderr=subprocess.PIPE,
                    env=self._environment(env),
                    timeout=timeout,
                    check=False,
                )
        except FileNotFoundError as exc:
            raise CommandError(f"Shell {self.shell} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"{prefix} timed out after {timeout:g}s.") from exc
        except OSError as exc:
            raise CommandError(f"Cannot write {destination}: {exc}") from exc
        if result.returncode != 0:
            stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
            raise CommandError(
                f"{prefix} failed (exit {result.returncode}): {stderr or 'no output'}"
            )
        return destination.stat().st_size

    def _environment(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        env = dict(os.environ if self.base_env is None else self.base_env)
        if extra:
            env.update(extra)
        return env


def wait_for_port(
    host: str,
    port: int,
    *,
    timeout: float = 30.0,
    interval: float = 0.5,
    connect: Callable[..., socket.socket] = socket.create_connection,
) -> float:
    """Poll until ``host:port`` accepts TCP connections.

    Returns the number of seconds waited. Raises :class:`CommandError` once
    *timeout* elapses without a successful connection.
    """
    started = time.monotonic()
    deadline = started + timeout
    last_error: OSError | None = None
    while True:
        remaining = deadline - time.monotonic()
        try:
            conn = connect((host, port), timeout=max(min(remaining, interval), 0.01))
        except OSError as exc:
            last_error = exc
        else:
            conn.close()
            return time.monotonic() - started
        if time.monotonic() >= deadline:
            break
        time.sleep(interval)
    raise CommandError(
        f"{host}:{port} did not accept connections within {timeout:g}s: {last_error}"
    )


def wait_for_command(
    runner: CommandRunner,
    command: str,
    *,
    timeout: float = 30.0,
    interval: float = 1.0,
    env: Mapping[str, str] | None = None,
) -> float:
    """Re-run *command* until it exits 0 or *timeout* elapses."""
    started = time.monotonic()
    deadline = started + timeout
    while True:
        remaining = max(deadline - time.monotonic(), 0.01)
        try:
            result = runner.run(command, env=env, timeout=remaining, check=False)
        except CommandError as exc:
            LOGGER.debug("Probe '%s' did not finish: %s", command, exc)
        else:
            if result.returncode == 0:
                return time.monotonic() - started
        if time.monotonic() >= deadline:
            break
        time.sleep(interval)
    raise CommandError(f"Probe '{_abbreviate(command)}' did not succeed within {timeout:g}s.")


def _abbreviate(command: str, limit: int = 60) -> str:
    text = " ".join(command.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


__all__ = [
    "CommandError",
    "CommandRunner",
    "STATE_ENV_PREFIX",
    "state_environment",
    "wait_for_command",
    "wait_for_port",
]
