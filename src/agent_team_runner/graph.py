"""Dependency graph between worker roles.

Edges come from a fixed role template filtered to the workers a plan requires.
Workers the plan leaves out count as already completed; the graph bridges
through them so a required worker still waits for its nearest required
ancestors.
"""

from __future__ import annotations

import io
from collections import defaultdict
from typing import Iterable, Mapping, Optional, Sequence

from rich.console import Console
from rich.tree import Tree

from .errors import PlanError
from .models import RunPlan, StatusRecord, WorkerSpec, WorkerState


def check_cycles(template: Sequence[WorkerSpec]) -> Optional[list[str]]:
    """Detect circular dependencies in a role template.

    Args:
        template: Worker specs with their `after` predecessors.

    Returns:
        List representing the cycle if found, None otherwise.
    """
    graph: dict[str, list[str]] = defaultdict(list)
    for spec in template:
        for dep in spec.after:
            graph[dep].append(spec.worker_id)

    # Track visit state: 0 = unvisited, 1 = visiting, 2 = visited
    state: dict[str, int] = {spec.worker_id: 0 for spec in template}

    def dfs(node: str, path: list[str]) -> Optional[list[str]]:
        if state.get(node) == 1:
            cycle_start = path.index(node)
            return path[cycle_start:] + [node]
        if state.get(node) == 2:
            return None

        state[node] = 1
        path.append(node)
        for neighbor in graph.get(node, []):
            cycle = dfs(neighbor, path.copy())
            if cycle:
                return cycle
        state[node] = 2
        return None

    for spec in template:
        if state[spec.worker_id] == 0:
            cycle = dfs(spec.worker_id, [])
            if cycle:
                return cycle
    return None


def validate_template(template: Sequence[WorkerSpec]) -> None:
    """Raise `PlanError` for duplicate ids, unknown predecessors, or cycles."""
    seen: set[str] = set()
    for spec in template:
        if spec.worker_id in seen:
            raise PlanError(f"Duplicate worker '{spec.worker_id}' in template")
        seen.add(spec.worker_id)
    for spec in template:
        unknown = [dep for dep in spec.after if dep not in seen]
        if unknown:
            raise PlanError(f"Worker '{spec.worker_id}' depends on unknown worker(s): {', '.join(unknown)}")
    cycle = check_cycles(template)
    if cycle:
        raise PlanError(f"Circular dependency detected: {' -> '.join(cycle)}")


class DependencyGraph:
    """Immutable readiness rules for one run."""

    def __init__(
        self,
        required: Sequence[str],
        predecessors: Mapping[str, Sequence[str]],
        positions: Mapping[str, int],
        skipped: Sequence[str] = (),
    ) -> None:
        self._positions = dict(positions)
        self._required = tuple(sorted(required, key=self.position))
        self._preds = {wid: tuple(sorted(predecessors.get(wid, ()), key=self.position)) for wid in self._required}
        self._skipped = tuple(skipped)
        deps: dict[str, list[str]] = defaultdict(list)
        for target, sources in self._preds.items():
            for source in sources:
                deps[source].append(target)
        self._dependents = {wid: tuple(sorted(deps.get(wid, ()), key=self.position)) for wid in self._required}

    # -- construction -------------------------------------------------------

    @classmethod
    def build(cls, plan: RunPlan, template: Optional[Sequence[WorkerSpec]] = None) -> "DependencyGraph":
        """Derive the graph for `plan` from its role template.

        Raises:
            PlanError: If the template is invalid or the plan requires a worker
                the template does not define.
        """
        specs = tuple(template if template is not None else plan.template)
        validate_template(specs)
        by_id = {spec.worker_id: spec for spec in specs}
        unknown = [wid for wid in plan.required_workers if wid not in by_id]
        if unknown:
            raise PlanError(f"Plan requires unknown worker(s): {', '.join(unknown)}")

        required = set(plan.required_workers)
        positions = {spec.worker_id: idx for idx, spec in enumerate(specs)}

        def nearest_required(worker_id: str, seen: set[str]) -> set[str]:
            found: set[str] = set()
            for dep in by_id[worker_id].after:
                if dep in seen:
                    continue
                seen.add(dep)
                if dep in required:
                    found.add(dep)
                else:
                    found |= nearest_required(dep, seen)
            return found

        predecessors = {wid: sorted(nearest_required(wid, set())) for wid in required}
        skipped = [spec.worker_id for spec in specs if spec.worker_id not in required]
        return cls(sorted(required), predecessors, positions, skipped)

    # -- structure ----------------------------------------------------------

    @property
    def required(self) -> tuple[str, ...]:
        return self._required

    @property
    def skipped(self) -> tuple[str, ...]:
        """Template workers the plan does not require."""
        return self._skipped

    @property
    def edges(self) -> list[tuple[str, str]]:
        return [(source, target) for target in self._required for source in self._preds[target]]

    def position(self, worker_id: str) -> int:
        return self._positions.get(worker_id, len(self._positions))

    def predecessors(self, worker_id: str) -> tuple[str, ...]:
        return self._preds.get(worker_id, ())

    def dependents(self, worker_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        direct = self._dependents.get(worker_id, ())
        if not transitive:
            return direct
        seen: set[str] = set()
        stack = list(direct)
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._dependents.get(node, ()))
        return tuple(sorted(seen, key=self.position))

    def ancestors(self, worker_id: str) -> tuple[str, ...]:
        seen: set[str] = set()
        stack = list(self._preds.get(worker_id, ()))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._preds.get(node, ()))
        return tuple(sorted(seen, key=self.position))

    # -- readiness ----------------------------------------------------------

    def ready_workers(self, snapshot: Mapping[str, StatusRecord]) -> list[str]:
        """Pending workers whose predecessors are all completed, in template order."""
        ready: list[str] = []
        for worker_id in self._required:
            if _state(snapshot, worker_id) != WorkerState.PENDING:
                continue
            if all(_state(snapshot, dep) == WorkerState.COMPLETED for dep in self._preds[worker_id]):
                ready.append(worker_id)
        return ready

    def is_terminal(self, snapshot: Mapping[str, StatusRecord]) -> bool:
        return all(_state(snapshot, wid).is_terminal for wid in self._required)

    def all_completed(self, snapshot: Mapping[str, StatusRecord]) -> bool:
        return all(_state(snapshot, wid) == WorkerState.COMPLETED for wid in self._required)

    def failed_workers(self, snapshot: Mapping[str, StatusRecord]) -> list[str]:
        return [wid for wid in self._required if _state(snapshot, wid) == WorkerState.FAILED]

    def has_fatal_failure(self, snapshot: Mapping[str, StatusRecord]) -> bool:
        """True when a failed worker still has an unresolved dependent."""
        return bool(self.fatal_causes(snapshot))

    def fatal_causes(self, snapshot: Mapping[str, StatusRecord]) -> list[str]:
        causes: list[str] = []
        for worker_id in self.failed_workers(snapshot):
            if any(not _state(snapshot, dep).is_terminal for dep in self.dependents(worker_id, transitive=True)):
                causes.append(worker_id)
        return causes

    def blocked_workers(self, snapshot: Mapping[str, StatusRecord]) -> list[str]:
        """Non-terminal workers that can never start because an ancestor failed."""
        blocked: list[str] = []
        for worker_id in self._required:
            if _state(snapshot, worker_id) != WorkerState.PENDING:
                continue
            if any(_state(snapshot, dep) == WorkerState.FAILED for dep in self.ancestors(worker_id)):
                blocked.append(worker_id)
        return blocked

    # -- presentation -------------------------------------------------------

    def render_tree(self, title: str = "Worker Dependency Tree") -> str:
        """Render the required workers as a dependency tree."""
        console = Console(file=io.StringIO(), record=True, width=100)
        tree = Tree(f"[bold]{title}[/bold]")

        def add_dependents(parent: Tree, worker_id: str, visited: set[str]) -> None:
            for dep in self._dependents.get(worker_id, ()):
                branch = parent.add(f"[cyan]{dep}[/cyan]")
                if dep in visited:
                    continue
                visited.add(dep)
                add_dependents(branch, dep, visited)

        visited: set[str] = set()
        for root in (wid for wid in self._required if not self._preds[wid]):
            branch = tree.add(f"[green]{root}[/green]")
            add_dependents(branch, root, visited)
        if self._skipped:
            tree.add(f"[dim]skipped: {', '.join(self._skipped)}[/dim]")

        console.print(tree)
        return console.export_text()


def _state(snapshot: Mapping[str, StatusRecord], worker_id: str) -> WorkerState:
    record = snapshot.get(worker_id)
    return record.state if record is not None else WorkerState.PENDING


def order_by_template(worker_ids: Iterable[str], template: Sequence[WorkerSpec]) -> list[str]:
    positions = {spec.worker_id: idx for idx, spec in enumerate(template)}
    return sorted(set(worker_ids), key=lambda wid: (positions.get(wid, len(positions)), wid))
