"""Typer-powered command line interface for ``stackctl``.

Commands are grouped by concern: ``setup`` drives the resumable provisioning
run, ``backup`` produces, verifies and prunes archives, ``state`` inspects the
durable key/value store, and ``config`` shows the merged configuration. Each
invocation appends one record to the structured operations log.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import (
    ArchiveStore,
    BackupArtifact,
    BackupCycle,
    BackupError,
    BackupProducer,
    BackupTier,
    VerifyResult,
    VerifyStatus,
)
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockError, LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .orchestrator import (
    LAST_FAILED_KEY,
    LAST_FAILURE_REASON_KEY,
    Orchestrator,
    RunReport,
    StepOutcome,
    StepState,
)
from .providers.commands import CommandRunner
from .provisioning import build_setup_registry
from .retention import PruneResult, RetentionEngine
from .snapshots import build_target
from .state import StateStore, StateStoreError
from .state.store import validate_key
from .steps import StepRegistryError

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stackctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit results as JSON.",
)

TIER_OPTION = typer.Option(
    None,
    "--tier",
    "-t",
    help="Limit to one retention tier (daily, weekly, monthly).",
)

_ERROR_EXIT_CODES: tuple[tuple[type[Exception], ExitCode], ...] = (
    (LockTimeoutError, ExitCode.BUSY),
    (StateStoreError, ExitCode.ENVIRONMENT),
    (LockError, ExitCode.ENVIRONMENT),
    (StepRegistryError, ExitCode.VALIDATION),
    (ConfigError, ExitCode.VALIDATION),
    (BackupError, ExitCode.PROVIDER),
)

_STATE_STYLE = {
    StepState.RUNNING: "[cyan]running[/cyan]",
    StepState.COMPLETED: "[green]done[/green]",
    StepState.SKIPPED: "[dim]skipped[/dim]",
    StepState.FAILED: "[red]failed[/red]",
}

_VERIFY_STYLE = {
    VerifyStatus.OK: "green",
    VerifyStatus.CORRUPT: "red",
    VerifyStatus.MISSING_CHECKSUM: "yellow",
    VerifyStatus.MISSING: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision a web stack host step by step and keep its backups.

        Setup progress is recorded in a durable state file so an interrupted
        run resumes at the step that failed. Backups are archived into
        daily, weekly and monthly tiers and pruned per tier.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: StateStore
    locks: LockManager
    logger: StructuredLogger
    archive: ArchiveStore
    runner: CommandRunner


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = RuntimeContext(
        config=config,
        store=StateStore(config.state_file),
        locks=LockManager(config.locks_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        archive=ArchiveStore(config.backups.root),
        runner=CommandRunner(shell=config.provisioning.shell),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stackctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"stackctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@contextmanager
def _translate_errors(op: OperationScope) -> Iterator[None]:
    """Map subsystem errors onto exit codes."""
    try:
        yield
    except tuple(error for error, _ in _ERROR_EXIT_CODES) as exc:
        rc = next(code for error, code in _ERROR_EXIT_CODES if isinstance(exc, error))
        _command_error(op, str(exc), rc=rc)


setup_app = typer.Typer(help="Run and inspect the resumable setup sequence.")
backups_app = typer.Typer(help="Produce, verify, and prune backup archives.")
state_app = typer.Typer(help="Inspect and edit the setup state file.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(setup_app, name="setup")
app.add_typer(backups_app, name="backup")
app.add_typer(state_app, name="state")
app.add_typer(config_app, name="config")


# ----------------------------------------------------------------------
# setup
# ----------------------------------------------------------------------
def _build_orchestrator(runtime: RuntimeContext, *, quiet: bool) -> Orchestrator:
    registry = build_setup_registry(runtime.config.provisioning, runtime.store, runtime.runner)

    def _announce(outcome: StepOutcome) -> None:
        if quiet or outcome.state is StepState.RUNNING:
            return
        label = _STATE_STYLE.get(outcome.state, outcome.state.value)
        detail = f" ({escape(outcome.error)})" if outcome.error else ""
        console.print(f"{label} {outcome.step_id}{detail}")

    return Orchestrator(registry, runtime.store, runtime.locks, listener=_announce)


def _finish_run(op: OperationScope, report: RunReport, *, json_output: bool) -> None:
    op.set_lock_wait_ms(report.lock_wait_ms)
    for outcome in report.outcomes:
        op.add_step(f"setup.{outcome.step_id}", status=outcome.state.value, detail=outcome.error)

    if json_output:
        console.print_json(data=report.to_dict())

    context = report.to_dict()
    if report.ok:
        if not json_output:
            if report.resumed_from:
                console.print(f"Resumed from step '{report.resumed_from}'.")
            console.print(
                f"[green]Setup complete[/green]: {len(report.executed)} ran, "
                f"{len(report.skipped)} already complete."
            )
        op.success("Setup complete.", changed=len(report.executed), context=context)
        return

    message = f"Step '{report.halted_at}' failed: {report.reason}"
    err_console.print(f"[red]{escape(message)}[/red]")
    err_console.print("Fix the problem and run `stackctl setup resume` to continue.")
    op.error(
        message,
        errors=[report.reason or "unknown failure"],
        rc=ExitCode.STEP_FAILED,
        changed=len(report.executed),
        context=context,
    )
    raise typer.Exit(code=ExitCode.STEP_FAILED)


@setup_app.command("run")
def setup_run(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Run every setup step that has not completed yet."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup run",
        args={"json": json_output},
        target={"kind": "setup"},
    ) as op:
        with _translate_errors(op):
            report = _build_orchestrator(runtime, quiet=json_output).run()
        _finish_run(op, report, json_output=json_output)


@setup_app.command("resume")
def setup_resume(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Continue after a failure, starting at the step that halted."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup resume",
        args={"json": json_output},
        target={"kind": "setup"},
    ) as op:
        with _translate_errors(op):
            report = _build_orchestrator(runtime, quiet=json_output).resume()
        _finish_run(op, report, json_output=json_output)


@setup_app.command("rerun")
def setup_rerun(
    ctx: typer.Context,
    step_id: str = typer.Argument(..., metavar="STEP", help="Step to force re-running."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Clear a step's completion marker and run it again."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup rerun",
        args={"step": step_id, "json": json_output},
        target={"kind": "setup", "step": step_id},
    ) as op:
        with _translate_errors(op):
            report = _build_orchestrator(runtime, quiet=json_output).rerun(step_id)
        _finish_run(op, report, json_output=json_output)


@setup_app.command("reset")
def setup_reset(
    ctx: typer.Context,
    step_id: str = typer.Argument(..., metavar="STEP", help="Step whose marker to clear."),
) -> None:
    """Clear a step's completion marker without running anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup reset",
        args={"step": step_id},
        target={"kind": "setup", "step": step_id},
    ) as op:
        with _translate_errors(op):
            existed = _build_orchestrator(runtime, quiet=True).reset(step_id)
        if existed:
            console.print(f"Cleared completion marker for '{step_id}'.")
            op.success("Cleared completion marker.", changed=1)
        else:
            console.print(f"Step '{step_id}' was not marked complete.")
            op.success("No completion marker to clear.", changed=0)


@setup_app.command("mark-complete")
def setup_mark_complete(
    ctx: typer.Context,
    step_id: str = typer.Argument(..., metavar="STEP", help="Step fixed out of band."),
) -> None:
    """Record a step as complete without running it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup mark-complete",
        args={"step": step_id},
        target={"kind": "setup", "step": step_id},
    ) as op:
        with _translate_errors(op):
            marker = _build_orchestrator(runtime, quiet=True).mark_complete(step_id)
        console.print(f"Marked '{step_id}' complete at {marker}.")
        op.success("Marked step complete.", changed=1, context={"marker": marker})


@setup_app.command("status")
def setup_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show which setup steps have completed."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup status",
        args={"json": json_output},
        target={"kind": "setup"},
    ) as op:
        with _translate_errors(op):
            statuses = _build_orchestrator(runtime, quiet=True).status()
            last_failed = runtime.store.load(LAST_FAILED_KEY) or None
            last_reason = runtime.store.load(LAST_FAILURE_REASON_KEY) or None

        if json_output:
            console.print_json(
                data={
                    "steps": [status.to_dict() for status in statuses],
                    "last_failure": (
                        {"step": last_failed, "reason": last_reason} if last_failed else None
                    ),
                }
            )
            op.success("Reported setup status (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Step", style="bold")
        table.add_column("Marker")
        table.add_column("Status")
        table.add_column("Completed At")
        for status in statuses:
            if status.completed:
                label = "[green]complete[/green]"
            elif status.last_failed:
                label = "[red]failed[/red]"
            else:
                label = "pending"
            table.add_row(status.step_id, status.key, label, status.marker or "")
        console.print(table)
        if last_failed:
            console.print(f"[red]Last failure[/red]: {last_failed}: {last_reason}")
        op.success("Reported setup status.", changed=0)


# ----------------------------------------------------------------------
# backup
# ----------------------------------------------------------------------
def _retention(runtime: RuntimeContext) -> RetentionEngine:
    return RetentionEngine(runtime.archive, runtime.config.backups.retention)


def _producer(runtime: RuntimeContext) -> BackupProducer:
    return BackupProducer(runtime.config.backups, runtime.archive)


def _parse_tier(op: OperationScope, tier: str | None) -> BackupTier | None:
    if tier is None:
        return None
    try:
        return BackupTier.parse(tier)
    except BackupError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


def _render_prune(results: Sequence[PruneResult]) -> None:
    for result in results:
        verb = "would remove" if result.dry_run else "removed"
        console.print(
            f"{result.tier}: kept {len(result.kept)}/{result.keep_count}, "
            f"pinned {len(result.pinned)}, {verb} {len(result.deleted)}"
        )
        for artifact in result.deleted:
            console.print(f"  - {artifact.path.name}")
        for error in result.errors:
            err_console.print(f"  [red]! {escape(error)}[/red]")


@backups_app.command("trigger")
def backup_trigger(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Produce one archive and prune every tier (for cron or systemd timers)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup trigger",
        args={"json": json_output},
        target={"kind": "backup", "scope": "cycle"},
    ) as op:
        with _translate_errors(op):
            target = build_target(runtime.config.backups, runtime.store, runtime.runner)
            cycle = BackupCycle(_producer(runtime), _retention(runtime), runtime.locks, target)
            report = cycle.trigger()
        op.set_lock_wait_ms(report.lock_wait_ms)
        op.add_step("backup.produce", status="success", detail=str(report.artifact.path))
        op.add_step("backup.prune", status="success" if not report.errors else "warning")

        if json_output:
            console.print_json(data=report.to_dict())
        else:
            console.print(
                f"[green]Created {report.artifact.tier.value} backup[/green] "
                f"{report.artifact.path}"
            )
            _render_prune(report.pruned)

        backups = [str(report.artifact.path)]
        if report.errors:
            op.warning(
                "Backup created; retention reported errors.",
                errors=report.errors,
                changed=1 + len(report.deleted),
                backups=backups,
                context=report.to_dict(),
            )
            raise typer.Exit(code=ExitCode.PROVIDER)
        op.success(
            "Backup cycle complete.",
            changed=1 + len(report.deleted),
            backups=backups,
            context=report.to_dict(),
        )


@backups_app.command("create")
def backup_create(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Produce one archive without pruning."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"json": json_output},
        target={"kind": "backup", "scope": "create"},
    ) as op:
        with _translate_errors(op):
            target = build_target(runtime.config.backups, runtime.store, runtime.runner)
            with runtime.locks.backup_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                artifact = _producer(runtime).produce(target)

        if json_output:
            console.print_json(data={"backup": artifact.to_dict()})
        else:
            console.print(f"[green]Created {artifact.tier.value} backup[/green] {artifact.path}")
        op.success(
            "Backup created.",
            changed=1,
            backups=[str(artifact.path)],
            context=artifact.to_dict(),
        )


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    tier: str | None = TIER_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List archives, newest first within each tier."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"tier": tier, "json": json_output},
        target={"kind": "backup", "scope": "archive"},
    ) as op:
        selected = _parse_tier(op, tier)
        with _translate_errors(op):
            artifacts = runtime.archive.list_artifacts(selected)

        if json_output:
            console.print_json(data={"backups": [artifact.to_dict() for artifact in artifacts]})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Archive", style="bold")
        table.add_column("Tier")
        table.add_column("Created At")
        table.add_column("Size", justify="right")
        table.add_column("Pinned")
        table.add_column("Checksum")
        if not artifacts:
            table.add_row("(none)", "", "", "", "", "")
        for artifact in artifacts:
            table.add_row(*_artifact_row(artifact))
        console.print(table)
        op.success("Reported backup list.", changed=0)


def _artifact_row(artifact: BackupArtifact) -> tuple[str, ...]:
    size = artifact.size_bytes
    return (
        artifact.path.name,
        artifact.tier.value,
        artifact.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        "" if size is None else str(size),
        "yes" if artifact.pinned else "",
        "yes" if artifact.checksum else "[yellow]missing[/yellow]",
    )


@backups_app.command("verify")
def backup_verify(
    ctx: typer.Context,
    path: Path | None = typer.Argument(None, help="Archive path or file name to verify."),
    all_backups: bool = typer.Option(
        False,
        "--all",
        help="Verify every archive under the backup root.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Recompute checksums and compare them with the recorded sidecars."""
    if path is None and not all_backups:
        err_console.print("[red]Specify an archive PATH or pass --all.[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION)
    if path is not None and all_backups:
        err_console.print("[red]Provide a single PATH or --all, not both.[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION)

    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup verify",
        args={"path": path, "all": all_backups, "json": json_output},
        target={"kind": "backup", "scope": "verify"},
    ) as op:
        with _translate_errors(op):
            if all_backups:
                targets = [artifact.path for artifact in runtime.archive.list_artifacts()]
            else:
                targets = [_locate_archive(runtime, path)]
            results: list[VerifyResult] = [runtime.archive.verify(item) for item in targets]

        payload = [result.to_dict() for result in results]
        if json_output:
            console.print_json(data={"results": payload})
        else:
            if not results:
                console.print("No backups to verify.")
            for result in results:
                colour = _VERIFY_STYLE[result.status]
                console.print(f"[{colour}]{result.status.value:<16}[/{colour}] {result.path}")

        failed = [result for result in results if not result.ok]
        if failed:
            op.warning(
                "Backup verification found problems.",
                warnings=[f"{result.path.name}: {result.status.value}" for result in failed],
                changed=0,
                context={"results": payload},
            )
            raise typer.Exit(code=ExitCode.ENVIRONMENT)
        op.success("Backup verification completed.", changed=0, context={"results": payload})


def _locate_archive(runtime: RuntimeContext, path: Path | None) -> Path:
    if path is None:
        raise BackupError("No archive specified.")
    if path.exists() or path.parent != Path("."):
        return path
    try:
        return runtime.archive.resolve(path).path
    except BackupError:
        return path


@backups_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    tier: str | None = TIER_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Preview the prune actions without deleting archives.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply the configured per-tier retention."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup prune",
        args={"tier": tier, "dry_run": dry_run, "json": json_output},
        target={"kind": "backup", "scope": "prune", "tier": tier},
    ) as op:
        selected = _parse_tier(op, tier)
        engine = _retention(runtime)
        with _translate_errors(op):
            with runtime.locks.backup_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                if selected is None:
                    results = engine.prune_all(dry_run=dry_run)
                else:
                    results = [engine.prune(selected.value, dry_run=dry_run)]

        payload = [result.to_dict() for result in results]
        if json_output:
            console.print_json(data={"results": payload})
        else:
            _render_prune(results)

        errors = [error for result in results if result.errors for error in result.errors]
        removed = 0 if dry_run else sum(len(result.deleted) for result in results)
        if errors:
            op.warning(
                "Prune completed with errors.",
                errors=errors,
                changed=removed,
                context={"results": payload},
            )
            raise typer.Exit(code=ExitCode.PROVIDER)
        summary = "Dry run complete." if dry_run else "Prune complete."
        op.success(summary, changed=removed, context={"results": payload})


def _toggle_pin(ctx: typer.Context, reference: str, *, pin: bool) -> None:
    runtime = _get_runtime(ctx)
    command = "backup pin" if pin else "backup unpin"
    with runtime.logger.operation(
        command,
        args={"archive": reference},
        target={"kind": "backup", "archive": reference},
    ) as op:
        with _translate_errors(op):
            with runtime.locks.backup_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                artifact = runtime.archive.resolve(reference)
                changed = runtime.archive.pin(artifact) if pin else runtime.archive.unpin(artifact)
        state = "pinned" if pin else "unpinned"
        if changed:
            console.print(f"{artifact.path.name} {state}.")
        else:
            console.print(f"{artifact.path.name} was already {state}.")
        op.success(f"Backup {state}.", changed=int(changed), backups=[str(artifact.path)])


@backups_app.command("pin")
def backup_pin(
    ctx: typer.Context,
    archive: str = typer.Argument(..., help="Archive path or file name."),
) -> None:
    """Exempt an archive from retention."""
    _toggle_pin(ctx, archive, pin=True)


@backups_app.command("unpin")
def backup_unpin(
    ctx: typer.Context,
    archive: str = typer.Argument(..., help="Archive path or file name."),
) -> None:
    """Return an archive to normal retention."""
    _toggle_pin(ctx, archive, pin=False)


# ----------------------------------------------------------------------
# state
# ----------------------------------------------------------------------
def _require_key(op: OperationScope, key: str) -> None:
    try:
        validate_key(key)
    except StateStoreError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)


@state_app.command("get")
def state_get(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="State key to read."),
) -> None:
    """Print the value recorded for KEY."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state get",
        args={"key": key},
        target={"kind": "state", "key": key},
    ) as op:
        _require_key(op, key)
        with _translate_errors(op):
            if not runtime.store.exists(key):
                _command_error(op, f"State key '{key}' is not set.", rc=ExitCode.VALIDATION)
            value = runtime.store.load(key)
        typer.echo(value)
        op.success("Read state key.", changed=0)


@state_app.command("set")
def state_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="State key to write."),
    value: str = typer.Argument(..., help="Value to record."),
) -> None:
    """Record VALUE under KEY."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state set",
        args={"key": key},
        target={"kind": "state", "key": key},
    ) as op:
        _require_key(op, key)
        with _translate_errors(op):
            with runtime.locks.orchestration_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                runtime.store.save(key, value)
        console.print(f"Set {key}.")
        op.success("Wrote state key.", changed=1)


@state_app.command("unset")
def state_unset(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="State key to remove."),
) -> None:
    """Remove KEY from the state file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state unset",
        args={"key": key},
        target={"kind": "state", "key": key},
    ) as op:
        _require_key(op, key)
        with _translate_errors(op):
            with runtime.locks.orchestration_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                existed = runtime.store.exists(key)
                runtime.store.remove(key)
        console.print(f"Removed {key}." if existed else f"{key} was not set.")
        op.success("Removed state key.", changed=int(existed))


@state_app.command("list")
def state_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show every recorded state key."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state list",
        args={"json": json_output},
        target={"kind": "state"},
    ) as op:
        with _translate_errors(op):
            entries = runtime.store.items()

        if json_output:
            console.print_json(data={"state": entries})
            op.success("Reported state (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        if not entries:
            table.add_row("(none)", "")
        for key, value in entries.items():
            table.add_row(key, value)
        console.print(table)
        op.success("Reported state.", changed=0)


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
