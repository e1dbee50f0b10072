# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set

from .errors import CycleDetected, MalformedDefinition, UnknownDependency
from .model import Step

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


class DependencyGraph:
    """
    Steps plus their dependency edges.

    Edges point from a dependency to its dependents (dependency must run
    first). Build with DependencyGraph.build(); the constructor assumes
    the input is already validated.
    """

    def __init__(self, steps: List[Step]):
        self._steps: Dict[str, Step] = {s.id: s for s in steps}
        self._position: Dict[str, int] = {s.id: i for i, s in enumerate(steps)}

        # dep -> dependents, in submission order
        self._dependents: Dict[str, List[str]] = {s.id: [] for s in steps}
        for s in steps:
            for d in self._deps_of(s):
                self._dependents[d].append(s.id)

        self._order: List[Step] | None = None

    # ------------------------------------------------------------------
    # Construction / validation
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, steps: Iterable[Step]) -> DependencyGraph:
        steps = list(steps)

        names = [s.id for s in steps]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise MalformedDefinition(f"Duplicate step ids found: {dupes}")

        known = set(names)
        for s in steps:
            for d in s.depends_on:
                if d not in known:
                    raise UnknownDependency(step=s.id, dependency=d, known=sorted(known))

        graph = cls(steps)
        graph._check_acyclic()
        return graph

    def _deps_of(self, step: Step) -> List[str]:
        # duplicates in depends_on are a single edge; keep submission order
        return sorted(set(step.depends_on), key=self._position.__getitem__)

    def _check_acyclic(self) -> None:
        color = {sid: _UNVISITED for sid in self._steps}

        for root in self._steps:
            if color[root] != _UNVISITED:
                continue

            # iterative DFS: (node, iterator over its deps)
            path: List[str] = [root]
            stack = [(root, iter(self._deps_of(self._steps[root])))]
            color[root] = _IN_PROGRESS

            while stack:
                node, deps = stack[-1]
                nxt = next(deps, None)
                if nxt is None:
                    color[node] = _DONE
                    stack.pop()
                    path.pop()
                    continue
                if color[nxt] == _IN_PROGRESS:
                    start = path.index(nxt)
                    # report in execution direction: dependency first
                    cycle = list(reversed(path[start:])) + [path[-1]]
                    raise CycleDetected(cycle=cycle)
                if color[nxt] == _UNVISITED:
                    color[nxt] = _IN_PROGRESS
                    path.append(nxt)
                    stack.append((nxt, iter(self._deps_of(self._steps[nxt]))))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._steps

    def step(self, step_id: str) -> Step:
        return self._steps[step_id]

    def dependencies(self, step_id: str) -> List[str]:
        return self._deps_of(self._steps[step_id])

    def dependents(self, step_id: str) -> List[str]:
        return list(self._dependents[step_id])

    def topological_order(self) -> List[Step]:
        """
        Every step after all of its dependencies.

        DFS post-order, visiting roots and dependencies in submission
        order, so the result is stable for an unchanged pipeline.
        """
        if self._order is None:
            seen: Set[str] = set()
            order: List[Step] = []

            def visit(sid: str) -> None:
                seen.add(sid)
                for d in self._deps_of(self._steps[sid]):
                    if d not in seen:
                        visit(d)
                order.append(self._steps[sid])

            for sid in self._steps:
                if sid not in seen:
                    visit(sid)
            self._order = order

        return list(self._order)

    def stages(self) -> List[List[str]]:
        """
        Group steps into "stages" (levels).
        Steps in one stage have no edges between them and could run in parallel.
        """
        indeg = {sid: len(self._deps_of(s)) for sid, s in self._steps.items()}
        q = deque(sid for sid in self._steps if indeg[sid] == 0)

        levels: List[List[str]] = []
        while q:
            level_size = len(q)
            level: List[str] = []

            for _ in range(level_size):
                node = q.popleft()
                level.append(node)
                for child in self._dependents[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)

            levels.append(sorted(level, key=self._position.__getitem__))

        return levels
