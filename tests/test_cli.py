"""Tests for the stackctl CLI."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from stackctl import __version__
from stackctl.cli import app
from stackctl.locking import LockManager
from stackctl.logging import OPERATIONS_LOG_NAME
from stackctl.state import StateStore

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _write_config(tmp_path: Path, overrides: dict[str, object] | None = None) -> Path:
    config: dict[str, object] = {
        "state_file": str(tmp_path / "state" / "setup_state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "lock_timeout": 5,
        "backups": {
            "root": str(tmp_path / "backups"),
            "name": "site",
            "compression": {"algorithm": "gzip"},
        },
    }
    if overrides:
        config.update(overrides)
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return config_file


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
) -> dict[str, str]:
    config_file = _write_config(tmp_path, config_overrides)
    return {"STACKCTL_CONFIG_FILE": str(config_file), "COLUMNS": "200"}


def _steps(**commands: list[str]) -> dict[str, object]:
    steps = {name: {"commands": cmds} for name, cmds in commands.items()}
    return {"provisioning": {"steps": steps}}


def _backup_overrides(tmp_path: Path, **retention: int) -> dict[str, object]:
    site = tmp_path / "www"
    site.mkdir(exist_ok=True)
    (site / "index.html").write_text("<h1>hello</h1>", encoding="utf-8")
    backups: dict[str, object] = {
        "root": str(tmp_path / "backups"),
        "name": "site",
        "compression": {"algorithm": "gzip"},
        "sources": {"paths": [str(site)]},
    }
    if retention:
        backups["retention"] = retention
    return {"backups": backups}


def _store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state" / "setup_state")


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    log_path = tmp_path / "logs" / OPERATIONS_LOG_NAME
    return [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Provision a web stack" in result.stdout


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown configuration keys are rejected before any command runs."""
    env = _prepare_environment(tmp_path, config_overrides={"bogus": True})

    result = runner.invoke(app, ["setup", "status"], env=env)

    assert result.exit_code == 2
    assert "bogus" in result.output


def test_config_show_renders_table(tmp_path: Path) -> None:
    """`config show` prints the merged configuration in a table."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "state_file" in result.stdout
    assert "lock_timeout" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits the resolved configuration."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_file"] == str(tmp_path / "state" / "setup_state")
    backups = payload["backups"]
    assert isinstance(backups, dict)
    assert backups["retention"] == {"daily": 7, "weekly": 4, "monthly": 6}


def test_setup_run_completes_every_step(tmp_path: Path) -> None:
    """A clean run records each completion marker and logs the operation."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["setup", "run"], env=env)

    assert result.exit_code == 0, result.output
    assert "Setup complete: 10 ran, 0 already complete." in result.stdout
    store = _store(tmp_path)
    for key in ("PREFLIGHT_COMPLETED", "SSL_CONFIGURED", "BACKUP_CONFIGURED"):
        assert store.exists(key)

    records = _operations(tmp_path)
    assert records[-1]["command"] == "setup run"
    assert records[-1]["result"]["status"] == "success"  # type: ignore[index]
    assert len(records[-1]["steps"]) == 10  # type: ignore[arg-type]

    again = runner.invoke(app, ["setup", "run"], env=env)
    assert again.exit_code == 0
    assert "0 ran, 10 already complete." in again.stdout


def test_setup_failure_then_resume(tmp_path: Path) -> None:
    """A failing step exits 1 and resume picks up exactly there."""
    env = _prepare_environment(
        tmp_path,
        config_overrides=_steps(configure=["echo template missing >&2; exit 7"]),
    )

    failed = runner.invoke(app, ["setup", "run"], env=env)

    assert failed.exit_code == 1
    assert "configure" in failed.output
    assert "template missing" in failed.output
    store = _store(tmp_path)
    assert store.exists("PACKAGES_INSTALLED")
    assert not store.exists("CONFIG_COMPLETED")
    assert store.load("LAST_FAILED_STEP") == "configure"

    _write_config(tmp_path, _steps(configure=["true"]))
    resumed = runner.invoke(app, ["setup", "resume"], env=env)

    assert resumed.exit_code == 0, resumed.output
    assert "Resumed from step 'configure'." in resumed.stdout
    assert "8 ran, 2 already complete." in resumed.stdout
    assert store.exists("CONFIG_COMPLETED")
    assert not store.exists("LAST_FAILED_STEP")


def test_setup_commands_receive_state(tmp_path: Path) -> None:
    """Values recorded with `state set` reach step commands."""
    output = tmp_path / "domain.txt"
    env = _prepare_environment(
        tmp_path,
        config_overrides=_steps(
            configure=[f'printf "%s" "$STACK_STATE_SITE_DOMAIN" > "{output}"']
        ),
    )

    recorded = runner.invoke(app, ["state", "set", "SITE_DOMAIN", "example.com"], env=env)
    assert recorded.exit_code == 0
    result = runner.invoke(app, ["setup", "run"], env=env)

    assert result.exit_code == 0, result.output
    assert output.read_text(encoding="utf-8") == "example.com"


def test_setup_status_json_reports_last_failure(tmp_path: Path) -> None:
    """Status shows markers in order plus the recorded failure."""
    env = _prepare_environment(tmp_path, config_overrides=_steps(database=["exit 3"]))
    runner.invoke(app, ["setup", "run"], env=env)

    result = runner.invoke(app, ["setup", "status", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    steps = payload["steps"]
    assert isinstance(steps, list)
    assert [entry["step_id"] for entry in steps][:5] == [
        "preflight",
        "packages",
        "configure",
        "users",
        "database",
    ]
    by_id = {entry["step_id"]: entry for entry in steps}
    assert by_id["users"]["completed"] is True
    assert by_id["database"]["completed"] is False
    assert by_id["database"]["last_failed"] is True
    last_failure = payload["last_failure"]
    assert isinstance(last_failure, dict)
    assert last_failure["step"] == "database"
    assert "exit 3" in last_failure["reason"]


def test_setup_mark_complete_reset_and_rerun(tmp_path: Path) -> None:
    """Operator overrides edit markers; rerun runs only the named step."""
    counter = tmp_path / "tls-runs"
    env = _prepare_environment(
        tmp_path,
        config_overrides=_steps(tls=[f'echo run >> "{counter}"']),
    )
    store = _store(tmp_path)

    marked = runner.invoke(app, ["setup", "mark-complete", "tls"], env=env)
    assert marked.exit_code == 0
    assert store.exists("SSL_CONFIGURED")

    runner.invoke(app, ["setup", "run"], env=env)
    assert not counter.exists()

    reset = runner.invoke(app, ["setup", "reset", "tls"], env=env)
    assert reset.exit_code == 0
    assert "Cleared completion marker for 'tls'." in reset.stdout
    assert not store.exists("SSL_CONFIGURED")
    assert not counter.exists()

    rerun = runner.invoke(app, ["setup", "rerun", "tls"], env=env)
    assert rerun.exit_code == 0, rerun.output
    assert counter.read_text(encoding="utf-8") == "run\n"
    assert store.exists("SSL_CONFIGURED")


def test_setup_unknown_step_is_validation_error(tmp_path: Path) -> None:
    """Naming a step that does not exist exits 2."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["setup", "rerun", "nonexistent"], env=env)

    assert result.exit_code == 2
    assert "nonexistent" in result.output


def test_setup_busy_when_lock_held(tmp_path: Path) -> None:
    """A concurrent orchestration exits with the busy code."""
    env = _prepare_environment(tmp_path)
    locks = LockManager(tmp_path / "run" / "locks")

    with locks.orchestration_lock():
        result = runner.invoke(app, ["--lock-timeout", "0.1", "setup", "run"], env=env)

    assert result.exit_code == 5
    assert "busy" in result.output
    assert not _store(tmp_path).exists("PREFLIGHT_COMPLETED")


def test_state_set_get_list_unset(tmp_path: Path) -> None:
    """The state commands round-trip values through the store."""
    env = _prepare_environment(tmp_path)

    assert runner.invoke(app, ["state", "set", "DB_NAME", "wordpress"], env=env).exit_code == 0

    got = runner.invoke(app, ["state", "get", "DB_NAME"], env=env)
    assert got.exit_code == 0
    assert got.stdout.strip() == "wordpress"

    listed = runner.invoke(app, ["state", "list", "--json"], env=env)
    assert _extract_json(listed.stdout) == {"state": {"DB_NAME": "wordpress"}}

    unset = runner.invoke(app, ["state", "unset", "DB_NAME"], env=env)
    assert unset.exit_code == 0
    assert "Removed DB_NAME." in unset.stdout

    missing = runner.invoke(app, ["state", "get", "DB_NAME"], env=env)
    assert missing.exit_code == 2


def test_state_rejects_invalid_keys(tmp_path: Path) -> None:
    """Keys that would corrupt the file format are refused."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["state", "set", "bad key", "x"], env=env)

    assert result.exit_code == 2
    assert not (tmp_path / "state" / "setup_state").exists()


def test_backup_create_list_and_verify(tmp_path: Path) -> None:
    """A created archive is listed and verifies; a corrupted one does not."""
    env = _prepare_environment(tmp_path, config_overrides=_backup_overrides(tmp_path))

    created = runner.invoke(app, ["backup", "create", "--json"], env=env)

    assert created.exit_code == 0, created.output
    backup = _extract_json(created.stdout)["backup"]
    assert isinstance(backup, dict)
    archive = Path(backup["path"])
    assert archive.exists()
    assert archive.parent.parent == tmp_path / "backups"
    assert archive.with_name(f"{archive.name}.sha256").exists()

    listed = runner.invoke(app, ["backup", "list", "--json"], env=env)
    entries = _extract_json(listed.stdout)["backups"]
    assert isinstance(entries, list)
    assert [entry["path"] for entry in entries] == [str(archive)]

    verified = runner.invoke(app, ["backup", "verify", str(archive)], env=env)
    assert verified.exit_code == 0
    assert "ok" in verified.stdout

    data = bytearray(archive.read_bytes())
    data[len(data) // 2] ^= 0xFF
    archive.write_bytes(bytes(data))

    corrupt = runner.invoke(app, ["backup", "verify", "--all", "--json"], env=env)
    assert corrupt.exit_code == 3
    results = _extract_json(corrupt.stdout)["results"]
    assert isinstance(results, list)
    assert results[0]["status"] == "corrupt"


def test_backup_create_without_sources_fails(tmp_path: Path) -> None:
    """An unconfigured target is reported instead of producing an empty archive."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["backup", "create"], env=env)

    assert result.exit_code == 4
    assert "No backup sources" in result.output


def test_backup_verify_requires_target(tmp_path: Path) -> None:
    """Verify needs either a path or --all."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["backup", "verify"], env=env)

    assert result.exit_code == 2


def test_backup_trigger_produces_and_prunes(
    tmp_path: Path,
    archive_factory: Callable[..., Path],
) -> None:
    """One trigger adds an archive and trims every tier to its keep count."""
    root = tmp_path / "backups"
    for tier in ("daily", "weekly", "monthly"):
        archive_factory(root, tier, "20200101-000000")
        archive_factory(root, tier, "20200102-000000")
    env = _prepare_environment(
        tmp_path,
        config_overrides=_backup_overrides(tmp_path, daily=1, weekly=1, monthly=1),
    )

    result = runner.invoke(app, ["backup", "trigger", "--json"], env=env)

    assert result.exit_code == 0, result.output
    payload = _extract_json(result.stdout)
    artifact = payload["artifact"]
    assert isinstance(artifact, dict)
    assert Path(artifact["path"]).exists()
    pruned = payload["pruned"]
    assert isinstance(pruned, list)
    assert sum(len(entry["deleted"]) for entry in pruned) == 4
    remaining = sorted(path.name for path in root.glob("*/*.tar.gz"))
    assert len(remaining) == 3
    assert Path(artifact["path"]).name in remaining


def test_backup_prune_dry_run_keeps_files(
    tmp_path: Path,
    archive_factory: Callable[..., Path],
) -> None:
    """Dry runs report candidates without deleting them."""
    root = tmp_path / "backups"
    archives = [
        archive_factory(root, "daily", stamp)
        for stamp in ("20250301-000000", "20250302-000000", "20250303-000000")
    ]
    env = _prepare_environment(
        tmp_path,
        config_overrides=_backup_overrides(tmp_path, daily=1),
    )

    result = runner.invoke(app, ["backup", "prune", "--tier", "daily", "--dry-run"], env=env)

    assert result.exit_code == 0, result.output
    assert "would remove 2" in result.stdout
    assert all(archive.exists() for archive in archives)


def test_backup_prune_rejects_unknown_tier(tmp_path: Path) -> None:
    """Only the three retention tiers are accepted."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["backup", "prune", "--tier", "hourly"], env=env)

    assert result.exit_code == 2


def test_backup_pin_protects_from_prune(
    tmp_path: Path,
    archive_factory: Callable[..., Path],
) -> None:
    """Pinned archives survive a prune that keeps nothing else."""
    root = tmp_path / "backups"
    keep = archive_factory(root, "monthly", "20250101-000000")
    drop = archive_factory(root, "monthly", "20250201-000000")
    env = _prepare_environment(
        tmp_path,
        config_overrides=_backup_overrides(tmp_path, monthly=0),
    )

    pinned = runner.invoke(app, ["backup", "pin", keep.name], env=env)
    assert pinned.exit_code == 0, pinned.output
    assert keep.with_name(f"{keep.name}.pinned").exists()

    pruned = runner.invoke(app, ["backup", "prune", "--tier", "monthly"], env=env)

    assert pruned.exit_code == 0, pruned.output
    assert keep.exists()
    assert not drop.exists()

    unpinned = runner.invoke(app, ["backup", "unpin", keep.name], env=env)
    assert unpinned.exit_code == 0
    assert not keep.with_name(f"{keep.name}.pinned").exists()


@pytest.mark.parametrize("command", [["backup", "create"], ["backup", "prune"]])
def test_backup_commands_busy_when_lock_held(tmp_path: Path, command: list[str]) -> None:
    """Backup operations share one lock and fail fast when it is held."""
    env = _prepare_environment(tmp_path, config_overrides=_backup_overrides(tmp_path))
    locks = LockManager(tmp_path / "run" / "locks")

    with locks.backup_lock():
        result = runner.invoke(app, ["--lock-timeout", "0.1", *command], env=env)

    assert result.exit_code == 5
