"""Tests for the resumable setup orchestrator."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from stackctl.locking import LockManager, LockTimeoutError
from stackctl.orchestrator import (
    LAST_FAILED_KEY,
    LAST_FAILURE_REASON_KEY,
    Orchestrator,
    StepOutcome,
    StepState,
)
from stackctl.state import StateStore
from stackctl.steps import DependencyCycleError, StepRegistry

STEP_IDS = ("preflight", "packages", "configure", "database", "application")


class Recorder:
    """Provisioning actions that log calls and can be told to fail."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failing: dict[str, BaseException] = {}

    def action(self, step_id: str) -> Callable[[], None]:
        def _run() -> None:
            self.calls.append(step_id)
            error = self.failing.get(step_id)
            if error is not None:
                raise error

        return _run


def _registry(recorder: Recorder) -> StepRegistry:
    registry = StepRegistry()
    previous: tuple[str, ...] = ()
    for step_id in STEP_IDS:
        registry.step(
            step_id,
            recorder.action(step_id),
            requires=previous,
            key=f"{step_id.upper()}_DONE",
        )
        previous = (step_id,)
    return registry


@pytest.fixture()
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state" / "setup_state")


@pytest.fixture()
def locks(tmp_path: Path) -> LockManager:
    return LockManager(tmp_path / "run" / "locks", default_timeout=0.2, poll_interval=0.01)


def _orchestrator(
    recorder: Recorder,
    store: StateStore,
    locks: LockManager,
    **kwargs: object,
) -> Orchestrator:
    return Orchestrator(
        _registry(recorder),
        store,
        locks,
        clock=lambda: "2025-01-01T00:00:00Z",
        **kwargs,  # type: ignore[arg-type]
    )


def test_fresh_run_executes_every_step_in_order(store: StateStore, locks: LockManager) -> None:
    """A clean run invokes each action once and records its marker."""
    recorder = Recorder()

    report = _orchestrator(recorder, store, locks).run()

    assert report.ok
    assert recorder.calls == list(STEP_IDS)
    assert report.executed == list(STEP_IDS)
    for step_id in STEP_IDS:
        assert store.load(f"{step_id.upper()}_DONE") == "2025-01-01T00:00:00Z"


def test_completed_steps_are_never_reinvoked(store: StateStore, locks: LockManager) -> None:
    """A second run skips everything already marked complete."""
    recorder = Recorder()
    orchestrator = _orchestrator(recorder, store, locks)
    orchestrator.run()
    recorder.calls.clear()

    report = orchestrator.run()

    assert recorder.calls == []
    assert report.skipped == list(STEP_IDS)
    assert all(outcome.state is StepState.SKIPPED for outcome in report.outcomes)


def test_failure_halts_and_resume_starts_at_failed_step(
    store: StateStore,
    locks: LockManager,
) -> None:
    """Failing at step k halts there and a later run re-enters at k."""
    recorder = Recorder()
    recorder.failing["configure"] = RuntimeError("config template\nmissing")
    orchestrator = _orchestrator(recorder, store, locks)

    report = orchestrator.run()

    assert not report.ok
    assert report.halted_at == "configure"
    assert report.reason == "config template missing"
    assert recorder.calls == ["preflight", "packages", "configure"]
    assert store.exists("CONFIGURE_DONE") is False
    assert store.load(LAST_FAILED_KEY) == "configure"
    assert store.load(LAST_FAILURE_REASON_KEY) == "config template missing"

    recorder.calls.clear()
    del recorder.failing["configure"]
    resumed = orchestrator.resume()

    assert resumed.ok
    assert resumed.resumed_from == "configure"
    assert recorder.calls == ["configure", "database", "application"]
    assert store.exists(LAST_FAILED_KEY) is False
    assert store.exists(LAST_FAILURE_REASON_KEY) is False


def test_manual_mark_complete_skips_failed_step(store: StateStore, locks: LockManager) -> None:
    """Marking the failed step fixed resumes after it."""
    recorder = Recorder()
    recorder.failing["database"] = RuntimeError("port busy")
    orchestrator = _orchestrator(recorder, store, locks)
    orchestrator.run()
    recorder.calls.clear()

    marker = orchestrator.mark_complete("database")
    report = orchestrator.run()

    assert marker == "2025-01-01T00:00:00Z"
    assert recorder.calls == ["application"]
    assert report.ok


def test_rerun_executes_only_the_cleared_step(store: StateStore, locks: LockManager) -> None:
    """Forcing a step clears its marker and runs just that step."""
    recorder = Recorder()
    orchestrator = _orchestrator(recorder, store, locks)
    orchestrator.run()
    recorder.calls.clear()

    report = orchestrator.rerun("packages")

    assert recorder.calls == ["packages"]
    assert report.executed == ["packages"]
    assert store.exists("PACKAGES_DONE")


def test_reset_clears_marker_without_running(store: StateStore, locks: LockManager) -> None:
    """Reset is an operator action that never invokes the step."""
    recorder = Recorder()
    orchestrator = _orchestrator(recorder, store, locks)
    orchestrator.run()
    recorder.calls.clear()

    assert orchestrator.reset("application") is True
    assert orchestrator.reset("application") is False
    assert recorder.calls == []
    assert store.exists("APPLICATION_DONE") is False


def test_status_reports_markers_and_last_failure(store: StateStore, locks: LockManager) -> None:
    """Status is read from the store in resolved order."""
    recorder = Recorder()
    recorder.failing["packages"] = RuntimeError("apt lock held")
    orchestrator = _orchestrator(recorder, store, locks)
    orchestrator.run()

    statuses = orchestrator.status()

    assert [status.step_id for status in statuses] == list(STEP_IDS)
    assert statuses[0].completed is True
    assert statuses[0].marker == "2025-01-01T00:00:00Z"
    assert statuses[1].completed is False
    assert statuses[1].last_failed is True
    assert statuses[2].last_failed is False


def test_keyboard_interrupt_recorded_and_reraised(store: StateStore, locks: LockManager) -> None:
    """An interrupted step is recorded as failed and left unmarked."""
    recorder = Recorder()
    recorder.failing["configure"] = KeyboardInterrupt()
    orchestrator = _orchestrator(recorder, store, locks)

    with pytest.raises(KeyboardInterrupt):
        orchestrator.run()

    assert store.load(LAST_FAILED_KEY) == "configure"
    assert store.exists("CONFIGURE_DONE") is False
    # The lock was released on the way out.
    with locks.orchestration_lock(timeout=0.1):
        pass


def test_cycle_aborts_before_any_action(store: StateStore, locks: LockManager) -> None:
    """A dependency cycle is fatal and nothing runs."""
    calls: list[str] = []
    registry = (
        StepRegistry()
        .step("a", lambda: calls.append("a"), requires=("b",))
        .step("b", lambda: calls.append("b"), requires=("a",))
    )

    with pytest.raises(DependencyCycleError):
        Orchestrator(registry, store, locks).run()

    assert calls == []
    assert store.items() == {}


def test_concurrent_run_fails_fast_as_busy(store: StateStore, locks: LockManager) -> None:
    """Only one orchestration may hold the state file at a time."""
    recorder = Recorder()
    orchestrator = _orchestrator(recorder, store, locks, lock_timeout=0.05)

    with locks.orchestration_lock():
        with pytest.raises(LockTimeoutError):
            orchestrator.run()

    assert recorder.calls == []


def test_listener_sees_state_transitions(store: StateStore, locks: LockManager) -> None:
    """The listener is told about each state a step passes through."""
    recorder = Recorder()
    recorder.failing["database"] = RuntimeError("boom")
    seen: list[tuple[str, StepState]] = []

    def listen(outcome: StepOutcome) -> None:
        seen.append((outcome.step_id, outcome.state))

    store.save("PREFLIGHT_DONE", "earlier")
    _orchestrator(recorder, store, locks, listener=listen).run()

    assert seen[0] == ("preflight", StepState.SKIPPED)
    assert ("packages", StepState.RUNNING) in seen
    assert ("packages", StepState.COMPLETED) in seen
    assert seen[-1] == ("database", StepState.FAILED)
