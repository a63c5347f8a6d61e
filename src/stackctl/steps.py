"""Step declarations and dependency resolution for the setup orchestrator."""
from __future__ import annotations

import heapq
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field

from .state.store import validate_key

ProvisioningAction = Callable[[], object]


class StepRegistryError(RuntimeError):
    """Raised when step declarations are inconsistent."""


class DependencyCycleError(StepRegistryError):
    """Raised when declared dependencies form a cycle."""

    def __init__(self, blocked: Iterable[str]) -> None:
        """Record the steps that could not be ordered."""
        self.blocked = tuple(blocked)
        super().__init__(f"Dependency cycle detected among steps: {', '.join(self.blocked)}")


@dataclass(frozen=True, slots=True)
class Step:
    """A named unit of provisioning work.

    ``key`` is the state key recorded once ``action`` succeeds; it defaults to
    the step id.
    """

    id: str
    action: ProvisioningAction = field(compare=False, repr=False)
    requires: tuple[str, ...] = ()
    key: str | None = None
    description: str = ""

    @property
    def idempotency_key(self) -> str:
        """State key whose presence marks this step complete."""
        return self.key or self.id


class StepRegistry:
    """Ordered collection of steps with a deterministic topological sort."""

    def __init__(self, steps: Iterable[Step] = ()) -> None:
        """Register any *steps* supplied up front."""
        self._steps: dict[str, Step] = {}
        for step in steps:
            self.register(step)

    def register(self, step: Step) -> None:
        """Add *step*; ids and idempotency keys must be unique."""
        step_id = step.id
        if not step_id or step_id != step_id.strip():
            raise StepRegistryError(f"Invalid step id {step_id!r}.")
        if step_id in self._steps:
            raise StepRegistryError(f"Step '{step_id}' is already registered.")
        try:
            validate_key(step.idempotency_key)
        except RuntimeError as exc:
            raise StepRegistryError(f"Step '{step_id}' has an invalid key: {exc}") from exc
        for existing in self._steps.values():
            if existing.idempotency_key == step.idempotency_key:
                raise StepRegistryError(
                    f"Steps '{existing.id}' and '{step_id}' share key "
                    f"'{step.idempotency_key}'."
                )
        self._steps[step_id] = step

    def step(
        self,
        step_id: str,
        action: ProvisioningAction,
        *,
        requires: Iterable[str] = (),
        key: str | None = None,
        description: str = "",
    ) -> StepRegistry:
        """Builder-style registration; returns ``self`` for chaining."""
        self.register(
            Step(
                id=step_id,
                action=action,
                requires=tuple(requires),
                key=key,
                description=description,
            )
        )
        return self

    def get(self, step_id: str) -> Step:
        """Return the step registered as *step_id*."""
        try:
            return self._steps[step_id]
        except KeyError:
            raise StepRegistryError(f"Unknown step '{step_id}'.") from None

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)

    def resolve(self) -> list[Step]:
        """Return steps in dependency order.

        Among steps whose dependencies are all satisfied, the one registered
        first runs first, so identical registrations always produce the same
        order. Cycles and unknown dependencies are reported before anything
        executes.
        """
        position = {step_id: index for index, step_id in enumerate(self._steps)}
        dependents: dict[str, list[str]] = {step_id: [] for step_id in self._steps}
        in_degree: dict[str, int] = {}

        for step in self._steps.values():
            unique = set(step.requires)
            for dependency in unique:
                if dependency == step.id:
                    raise DependencyCycleError([step.id])
                if dependency not in self._steps:
                    raise StepRegistryError(
                        f"Step '{step.id}' depends on unknown step '{dependency}'."
                    )
                dependents[dependency].append(step.id)
            in_degree[step.id] = len(unique)

        ready = [position[step_id] for step_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        ids = list(self._steps)
        ordered: list[Step] = []
        while ready:
            current = ids[heapq.heappop(ready)]
            ordered.append(self._steps[current])
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, position[dependent])

        if len(ordered) != len(self._steps):
            blocked = [step_id for step_id in ids if in_degree[step_id] > 0]
            raise DependencyCycleError(blocked)
        return ordered


__all__ = [
    "DependencyCycleError",
    "ProvisioningAction",
    "Step",
    "StepRegistry",
    "StepRegistryError",
]
