"""Layered configuration for stackctl.

Sources are merged in increasing precedence: built-in ``DEFAULTS``, the YAML
file (``/etc/stackctl/config.yml`` unless ``--config-file`` or
``STACKCTL_CONFIG_FILE`` points elsewhere), ``STACKCTL_*`` environment
variables, and finally programmatic overrides from CLI flags. A double
underscore nests environment keys::

    export STACKCTL_BACKUPS__RETENTION__DAILY=3
    export STACKCTL_LOCK_TIMEOUT=10

Environment values go through ``yaml.safe_load`` so numbers and booleans keep
their types. The merged tree is validated and frozen into dataclasses.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "STACKCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RetentionConfig:
    """Per-tier keep counts for unpinned backup artifacts."""

    daily: int = 7
    weekly: int = 4
    monthly: int = 6

    def keep_count(self, tier: str) -> int:
        """Return the keep count configured for *tier*."""
        if tier not in BACKUP_TIERS:
            raise ConfigError(f"Unknown backup tier '{tier}'.")
        return int(getattr(self, tier))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"daily": self.daily, "weekly": self.weekly, "monthly": self.monthly}


@dataclass(frozen=True)
class BackupSourcesConfig:
    """What a backup captures: file trees and an optional database dump."""

    paths: tuple[Path, ...] = ()
    database_command: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "paths": [str(path) for path in self.paths],
            "database_command": self.database_command,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage, naming, and retention defaults."""

    root: Path
    name: str = "site"
    compression: str = "auto"
    compression_level: int | None = None
    week_end_day: int = 7
    retention: RetentionConfig = RetentionConfig()
    sources: BackupSourcesConfig = BackupSourcesConfig()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "name": self.name,
            "compression": {
                "algorithm": self.compression,
                "level": self.compression_level,
            },
            "week_end_day": self.week_end_day,
            "retention": self.retention.to_dict(),
            "sources": self.sources.to_dict(),
        }


@dataclass(frozen=True)
class PortWaitConfig:
    """Bounded readiness poll for a TCP service."""

    port: int
    host: str = "127.0.0.1"
    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"host": self.host, "port": self.port, "timeout": self.timeout}


@dataclass(frozen=True)
class StepCommandsConfig:
    """Shell commands backing a single provisioning step."""

    commands: tuple[str, ...] = ()
    timeout: float | None = None
    wait_for_port: PortWaitConfig | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "commands": list(self.commands),
            "timeout": self.timeout,
            "wait_for_port": self.wait_for_port.to_dict() if self.wait_for_port else None,
        }


@dataclass(frozen=True)
class ProvisioningConfig:
    """Provisioning command wiring for the setup steps."""

    shell: str = "/bin/sh"
    steps: Mapping[str, StepCommandsConfig] = field(default_factory=dict)

    def for_step(self, step_id: str) -> StepCommandsConfig:
        """Return the command config for *step_id* (empty when unset)."""
        return self.steps.get(step_id, StepCommandsConfig())

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "shell": self.shell,
            "steps": {name: spec.to_dict() for name, spec in self.steps.items()},
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stackctl."""

    config_file: Path
    state_file: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    backups: BackupConfig
    provisioning: ProvisioningConfig

    @property
    def locks_dir(self) -> Path:
        """Directory holding advisory lock files."""
        return self.runtime_dir / "locks"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_file": str(self.state_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "backups": self.backups.to_dict(),
            "provisioning": self.provisioning.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/stackctl/config.yml",
    "state_file": "/var/lib/stackctl/setup_state",
    "logs_dir": "/var/log/stackctl",
    "runtime_dir": "/run/stackctl",
    "lock_timeout": 30.0,
    "backups": {
        "root": "/var/backups/stackctl",
        "name": "site",
        "compression": {
            "algorithm": "auto",
            "level": None,
        },
        "week_end_day": 7,
        "retention": {
            "daily": 7,
            "weekly": 4,
            "monthly": 6,
        },
        "sources": {
            "paths": [],
            "database_command": None,
        },
    },
    "provisioning": {
        "shell": "/bin/sh",
        "steps": {},
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BACKUP_COMPRESSION = {"auto", "zstd", "gzip", "none"}
BACKUP_TIERS = ("daily", "weekly", "monthly")


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    backups = raw.get("backups")
    if backups is not None:
        backups_map = _as_dict(backups, "backups")
        unknown = set(backups_map.keys()) - {
            "root",
            "name",
            "compression",
            "week_end_day",
            "retention",
            "sources",
        }
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown backups configuration keys: {joined}.")

        compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
        unknown_comp = set(compression_map.keys()) - {"algorithm", "level"}
        if unknown_comp:
            joined = ", ".join(sorted(unknown_comp))
            raise ConfigError(f"Unknown backups compression keys: {joined}.")

        algorithm = str(compression_map.get("algorithm", "auto"))
        if algorithm not in ALLOWED_BACKUP_COMPRESSION:
            allowed = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
            raise ConfigError(
                f"Unsupported backup compression '{algorithm}'. Allowed: {allowed}."
            )

        retention_map = _as_dict(backups_map.get("retention"), "backups.retention")
        unknown_tiers = set(retention_map.keys()) - set(BACKUP_TIERS)
        if unknown_tiers:
            joined = ", ".join(sorted(unknown_tiers))
            raise ConfigError(f"Unknown backup retention tiers: {joined}.")

        sources_map = _as_dict(backups_map.get("sources"), "backups.sources")
        unknown_sources = set(sources_map.keys()) - {"paths", "database_command"}
        if unknown_sources:
            joined = ", ".join(sorted(unknown_sources))
            raise ConfigError(f"Unknown backup sources keys: {joined}.")

    provisioning = raw.get("provisioning")
    if provisioning is not None:
        provisioning_map = _as_dict(provisioning, "provisioning")
        unknown = set(provisioning_map.keys()) - {"shell", "steps"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown provisioning configuration keys: {joined}.")

        steps_map = _as_dict(provisioning_map.get("steps"), "provisioning.steps")
        for step_id, step_raw in steps_map.items():
            step_map = _as_dict(step_raw, f"provisioning.steps.{step_id}")
            unknown_step = set(step_map.keys()) - {"commands", "timeout", "wait_for_port"}
            if unknown_step:
                joined = ", ".join(sorted(unknown_step))
                raise ConfigError(f"Unknown keys for provisioning.steps.{step_id}: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_file = _to_path(raw.get("state_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    return AppConfig(
        config_file=config_file,
        state_file=state_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        backups=_build_backup_config(_as_dict(raw.get("backups"), "backups")),
        provisioning=_build_provisioning_config(
            _as_dict(raw.get("provisioning"), "provisioning")
        ),
    )


def _build_backup_config(backups_mapping: Mapping[str, object]) -> BackupConfig:
    backups_root = _to_path(backups_mapping.get("root", "/var/backups/stackctl"))

    name = str(backups_mapping.get("name") or "site").strip()
    if not name or "/" in name:
        raise ConfigError("backups.name must be a non-empty string without '/'.")

    compression_mapping = _as_dict(backups_mapping.get("compression"), "backups.compression")
    compression_algorithm = str(compression_mapping.get("algorithm", "auto"))
    compression_level_raw = compression_mapping.get("level")
    compression_level: int | None = None
    if compression_level_raw is not None:
        parsed_level = _expect_int(
            compression_level_raw, "backups.compression.level", default=1
        )
        if parsed_level <= 0:
            raise ConfigError(
                "backups.compression.level must be greater than zero when specified."
            )
        compression_level = parsed_level

    week_end_day = _expect_int(
        backups_mapping.get("week_end_day"), "backups.week_end_day", default=7
    )
    if not 1 <= week_end_day <= 7:
        raise ConfigError("backups.week_end_day must be an ISO weekday between 1 and 7.")

    retention_mapping = _as_dict(backups_mapping.get("retention"), "backups.retention")
    defaults = RetentionConfig()
    keep_counts: dict[str, int] = {}
    for tier in BACKUP_TIERS:
        value = _expect_int(
            retention_mapping.get(tier),
            f"backups.retention.{tier}",
            default=defaults.keep_count(tier),
        )
        if value < 0:
            raise ConfigError(f"backups.retention.{tier} must be zero or a positive integer.")
        keep_counts[tier] = value

    sources_mapping = _as_dict(backups_mapping.get("sources"), "backups.sources")
    raw_paths = sources_mapping.get("paths")
    source_paths: list[Path] = []
    if raw_paths is not None:
        for index, entry in enumerate(_as_sequence(raw_paths, "backups.sources.paths")):
            if not isinstance(entry, (str, Path)):
                raise ConfigError(f"backups.sources.paths[{index}] must be a path string.")
            source_paths.append(_to_path(entry))
    database_command = sources_mapping.get("database_command")
    if database_command is not None and not isinstance(database_command, str):
        raise ConfigError("backups.sources.database_command must be a string or null.")

    return BackupConfig(
        root=backups_root,
        name=name,
        compression=compression_algorithm,
        compression_level=compression_level,
        week_end_day=week_end_day,
        retention=RetentionConfig(**keep_counts),
        sources=BackupSourcesConfig(
            paths=tuple(source_paths),
            database_command=database_command.strip() if database_command else None,
        ),
    )


def _build_provisioning_config(mapping: Mapping[str, object]) -> ProvisioningConfig:
    shell = str(mapping.get("shell") or "/bin/sh")
    steps_mapping = _as_dict(mapping.get("steps"), "provisioning.steps")
    steps: dict[str, StepCommandsConfig] = {}
    for step_id, step_raw in steps_mapping.items():
        label = f"provisioning.steps.{step_id}"
        step_map = _as_dict(step_raw, label)

        commands_raw = step_map.get("commands")
        commands: list[str] = []
        if isinstance(commands_raw, str):
            commands.append(commands_raw)
        elif commands_raw is not None:
            for index, entry in enumerate(_as_sequence(commands_raw, f"{label}.commands")):
                if not isinstance(entry, str) or not entry.strip():
                    raise ConfigError(f"{label}.commands[{index}] must be a non-empty string.")
                commands.append(entry)

        timeout_raw = step_map.get("timeout")
        timeout = (
            _expect_positive_float(timeout_raw, f"{label}.timeout", default=1.0)
            if timeout_raw is not None
            else None
        )

        wait_raw = step_map.get("wait_for_port")
        wait: PortWaitConfig | None = None
        if wait_raw is not None:
            wait_map = _as_dict(wait_raw, f"{label}.wait_for_port")
            unknown = set(wait_map.keys()) - {"host", "port", "timeout"}
            if unknown:
                joined = ", ".join(sorted(unknown))
                raise ConfigError(f"Unknown keys for {label}.wait_for_port: {joined}.")
            if wait_map.get("port") is None:
                raise ConfigError(f"{label}.wait_for_port.port must be specified.")
            port = _expect_int(wait_map.get("port"), f"{label}.wait_for_port.port", default=0)
            if not 0 < port < 65536:
                raise ConfigError(f"{label}.wait_for_port.port must be between 1 and 65535.")
            wait = PortWaitConfig(
                port=port,
                host=str(wait_map.get("host") or "127.0.0.1"),
                timeout=_expect_positive_float(
                    wait_map.get("timeout"), f"{label}.wait_for_port.timeout", default=30.0
                ),
            )

        steps[step_id] = StepCommandsConfig(
            commands=tuple(commands),
            timeout=timeout,
            wait_for_port=wait,
        )
    return ProvisioningConfig(shell=shell, steps=steps)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BACKUP_TIERS",
    "BackupConfig",
    "BackupSourcesConfig",
    "ConfigError",
    "PortWaitConfig",
    "ProvisioningConfig",
    "RetentionConfig",
    "StepCommandsConfig",
    "load_config",
]
