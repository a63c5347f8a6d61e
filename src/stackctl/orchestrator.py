"""Resumable, idempotent execution of setup steps.

The orchestrator walks the resolved step order under the ``orchestration``
lock. A step whose idempotency key is present in the state store is skipped
without touching its action; any other step runs, and only a successful run
records the completion marker. The first failure halts the run and is noted
under ``LAST_FAILED_STEP`` so the next invocation, which simply repeats the
same walk, resumes exactly there.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .locking import LockManager
from .state.store import StateStore
from .steps import Step, StepRegistry

LOGGER = logging.getLogger(__name__)

LAST_FAILED_KEY = "LAST_FAILED_STEP"
LAST_FAILURE_REASON_KEY = "LAST_FAILURE_REASON"

_MAX_REASON_LENGTH = 500


class StepState(str, Enum):
    """Lifecycle of a step within one run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class StepOutcome:
    """What happened to one step during a run."""

    step_id: str
    key: str
    state: StepState = StepState.PENDING
    started_at: str | None = None
    duration_ms: int | None = None
    marker: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload


@dataclass(slots=True)
class RunReport:
    """Summary of an orchestrator invocation."""

    outcomes: list[StepOutcome] = field(default_factory=list)
    halted_at: str | None = None
    reason: str | None = None
    resumed_from: str | None = None
    lock_wait_ms: int = 0

    @property
    def ok(self) -> bool:
        """True when every step is complete."""
        return self.halted_at is None

    @property
    def executed(self) -> list[str]:
        """Ids of steps whose action ran to success in this run."""
        return [o.step_id for o in self.outcomes if o.state is StepState.COMPLETED]

    @property
    def skipped(self) -> list[str]:
        """Ids of steps skipped because they were already complete."""
        return [o.step_id for o in self.outcomes if o.state is StepState.SKIPPED]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "halted_at": self.halted_at,
            "reason": self.reason,
            "resumed_from": self.resumed_from,
            "lock_wait_ms": self.lock_wait_ms,
            "steps": [outcome.to_dict() for outcome in self.outcomes],
        }


@dataclass(slots=True)
class StepStatus:
    """Persisted status of a step, read back from the state store."""

    step_id: str
    key: str
    requires: tuple[str, ...]
    completed: bool
    marker: str | None
    last_failed: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload = asdict(self)
        payload["requires"] = list(self.requires)
        return payload


StepListener = Callable[[StepOutcome], None]


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _describe_failure(exc: BaseException) -> str:
    text = " ".join(str(exc).split()) or type(exc).__name__
    if len(text) > _MAX_REASON_LENGTH:
        text = text[: _MAX_REASON_LENGTH - 3] + "..."
    return text


class Orchestrator:
    """Run registered steps in order, skipping those already complete."""

    def __init__(
        self,
        registry: StepRegistry,
        store: StateStore,
        locks: LockManager,
        *,
        lock_timeout: float | None = None,
        listener: StepListener | None = None,
        clock: Callable[[], str] = _timestamp,
    ) -> None:
        """Bind the orchestrator to its registry, store, and lock manager."""
        self.registry = registry
        self.store = store
        self.locks = locks
        self.lock_timeout = lock_timeout
        self.listener = listener
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def run(self) -> RunReport:
        """Execute every step that is not yet marked complete."""
        with self.locks.orchestration_lock(timeout=self.lock_timeout) as handle:
            return self._execute(lock_wait_ms=handle.wait_ms)

    def resume(self) -> RunReport:
        """Re-run after a failure, reporting where the previous run halted."""
        with self.locks.orchestration_lock(timeout=self.lock_timeout) as handle:
            previous = self.store.load(LAST_FAILED_KEY) or None
            report = self._execute(lock_wait_ms=handle.wait_ms)
        report.resumed_from = previous
        return report

    def rerun(self, step_id: str) -> RunReport:
        """Clear *step_id*'s completion marker, then run."""
        step = self.registry.get(step_id)
        with self.locks.orchestration_lock(timeout=self.lock_timeout) as handle:
            self.registry.resolve()
            self.store.remove(step.idempotency_key)
            LOGGER.info("Cleared completion marker %s for forced re-run", step.idempotency_key)
            return self._execute(lock_wait_ms=handle.wait_ms)

    def reset(self, step_id: str) -> bool:
        """Clear *step_id*'s completion marker without running anything."""
        step = self.registry.get(step_id)
        with self.locks.orchestration_lock(timeout=self.lock_timeout):
            existed = self.store.exists(step.idempotency_key)
            self.store.remove(step.idempotency_key)
        return existed

    def mark_complete(self, step_id: str) -> str:
        """Record *step_id* as complete after an out-of-band fix."""
        step = self.registry.get(step_id)
        marker = self._clock()
        with self.locks.orchestration_lock(timeout=self.lock_timeout):
            self.store.save(step.idempotency_key, marker)
        return marker

    def status(self) -> list[StepStatus]:
        """Return the persisted status of every step in execution order."""
        entries = self.store.items()
        last_failed = entries.get(LAST_FAILED_KEY)
        return [
            StepStatus(
                step_id=step.id,
                key=step.idempotency_key,
                requires=step.requires,
                completed=step.idempotency_key in entries,
                marker=entries.get(step.idempotency_key),
                last_failed=step.id == last_failed,
            )
            for step in self.registry.resolve()
        ]

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------
    def _execute(self, *, lock_wait_ms: int) -> RunReport:
        order = self.registry.resolve()
        report = RunReport(lock_wait_ms=lock_wait_ms)

        for step in order:
            outcome = StepOutcome(step_id=step.id, key=step.idempotency_key)
            report.outcomes.append(outcome)

            if self.store.exists(step.idempotency_key):
                outcome.state = StepState.SKIPPED
                outcome.marker = self.store.load(step.idempotency_key)
                LOGGER.info("Skipping %s; already complete (%s)", step.id, outcome.marker)
                self._notify(outcome)
                continue

            if not self._invoke(step, outcome):
                report.halted_at = step.id
                report.reason = outcome.error
                return report

        self.store.remove(LAST_FAILED_KEY)
        self.store.remove(LAST_FAILURE_REASON_KEY)
        return report

    def _invoke(self, step: Step, outcome: StepOutcome) -> bool:
        outcome.state = StepState.RUNNING
        outcome.started_at = self._clock()
        self._notify(outcome)
        started = time.monotonic()
        LOGGER.info("Running step %s", step.id)
        try:
            step.action()
        except KeyboardInterrupt as exc:
            self._record_failure(step, outcome, exc, started)
            raise
        except Exception as exc:  # noqa: BLE001 - any action error halts the run
            LOGGER.debug("Step %s failed", step.id, exc_info=True)
            self._record_failure(step, outcome, exc, started)
            return False

        marker = self._clock()
        self.store.save(step.idempotency_key, marker)
        outcome.state = StepState.COMPLETED
        outcome.marker = marker
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        self._notify(outcome)
        return True

    def _record_failure(
        self,
        step: Step,
        outcome: StepOutcome,
        exc: BaseException,
        started: float,
    ) -> None:
        reason = _describe_failure(exc)
        outcome.state = StepState.FAILED
        outcome.error = reason
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        LOGGER.warning("Step %s failed: %s", step.id, reason)
        self.store.save(LAST_FAILED_KEY, step.id)
        self.store.save(LAST_FAILURE_REASON_KEY, reason)
        self._notify(outcome)

    def _notify(self, outcome: StepOutcome) -> None:
        if self.listener is not None:
            self.listener(outcome)


__all__ = [
    "LAST_FAILED_KEY",
    "LAST_FAILURE_REASON_KEY",
    "Orchestrator",
    "RunReport",
    "StepListener",
    "StepOutcome",
    "StepState",
    "StepStatus",
]
