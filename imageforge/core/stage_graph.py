"""Stage DAG — artifact copies as edges, topological waves, cascade blocking.

The graph enforces:
- A stage may only copy from stages it has a declared artifact edge to.
- No stage starts until every producer it copies from has PASSED.
- When a stage fails, all transitive dependents are BLOCKED.
"""

from __future__ import annotations

from collections import deque

from imageforge.models.artifacts import ArtifactReference
from imageforge.models.stages import BuildStage, StageState


class CyclicDependencyError(ValueError):
    """Raised when the stage graph contains a cycle."""


class UnknownStageError(ValueError):
    """Raised when an artifact edge names a stage that is not defined."""


class StageGraph:
    """Directed acyclic graph of build stages.

    Built from the ``copy_artifact`` instructions of each stage: a
    reference from stage A into stage B is an edge A -> B.
    """

    def __init__(self, stages: list[BuildStage] | tuple[BuildStage, ...]) -> None:
        self._order: list[str] = []
        self._stages: dict[str, BuildStage] = {}
        for stage in stages:
            if stage.name in self._stages:
                raise ValueError(f"Duplicate stage name: {stage.name}")
            self._stages[stage.name] = stage
            self._order.append(stage.name)

        # stage -> producers it copies from
        self._producers: dict[str, list[str]] = {name: [] for name in self._order}
        # stage -> stages that copy from it
        self._dependents: dict[str, list[str]] = {name: [] for name in self._order}
        self._edges: dict[str, list[ArtifactReference]] = {name: [] for name in self._order}

        for stage in stages:
            for ref in stage.artifact_edges():
                if ref.producing_stage not in self._stages:
                    raise UnknownStageError(
                        f"Stage {stage.name!r} copies from undefined stage "
                        f"{ref.producing_stage!r}"
                    )
                self._edges[stage.name].append(ref)
                if ref.producing_stage not in self._producers[stage.name]:
                    self._producers[stage.name].append(ref.producing_stage)
                    self._dependents[ref.producing_stage].append(stage.name)

        self._validate_no_cycles()

    def _validate_no_cycles(self) -> None:
        """Verify the graph is a DAG using Kahn's algorithm."""
        visited = set(self.topological_order())
        if len(visited) != len(self._stages):
            stuck = [name for name in self._order if name not in visited]
            raise CyclicDependencyError(
                f"Stage graph has a cycle through: {', '.join(stuck)}"
            )

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def stage_names(self) -> list[str]:
        """Stage names in declaration order."""
        return list(self._order)

    def get_stage(self, name: str) -> BuildStage:
        return self._stages[name]

    def get_producers(self, name: str) -> list[str]:
        """Return the stages *name* copies artifacts from."""
        return list(self._producers.get(name, []))

    def get_edges(self, name: str) -> list[ArtifactReference]:
        """Return the artifact references consumed by *name*."""
        return list(self._edges.get(name, []))

    def get_dependents(self, name: str) -> list[str]:
        """Return all transitive dependents of *name* (BFS)."""
        result = []
        queue = deque(self._dependents.get(name, []))
        visited: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            result.append(node)
            queue.extend(self._dependents.get(node, []))
        return result

    def is_reachable(self, source: str, target: str) -> bool:
        """Whether a path of artifact edges leads from *source* to *target*."""
        return target in self.get_dependents(source)

    def topological_order(self) -> list[str]:
        """Stage names in a dependency-respecting order.

        Ties are broken by declaration order, so the result is stable.
        """
        in_degree = {name: len(self._producers[name]) for name in self._order}
        queue = deque(name for name in self._order if in_degree[name] == 0)
        result = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in self._dependents[node]:
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)
        return result

    def waves(self) -> list[list[str]]:
        """Group stages into waves of mutually independent stages.

        Every stage in wave N depends only on stages in waves < N, so the
        members of one wave may run concurrently.
        """
        level: dict[str, int] = {}
        for name in self.topological_order():
            producers = self._producers[name]
            level[name] = 1 + max((level[p] for p in producers), default=-1)
        waves: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for name in self._order:
            waves[level[name]].append(name)
        return waves

    # ------------------------------------------------------------------
    # Readiness and cascade blocking
    # ------------------------------------------------------------------

    def are_producers_passed(self, name: str, states: dict[str, StageState]) -> bool:
        return all(
            states.get(producer) == StageState.PASSED
            for producer in self._producers.get(name, [])
        )

    def get_blocking_reasons(
        self, name: str, states: dict[str, StageState]
    ) -> list[str]:
        """Return human-readable reasons why a stage cannot start."""
        reasons = []
        for producer in self._producers.get(name, []):
            state = states.get(producer, StageState.NOT_STARTED)
            if state != StageState.PASSED:
                reasons.append(f"{producer} is {state.value}")
        return reasons

    def cascade_block(
        self, failed: str, states: dict[str, StageState]
    ) -> list[str]:
        """When a stage fails, block all transitive dependents.

        Returns the stage names that were newly blocked.
        """
        blocked: list[str] = []
        for name in self.get_dependents(failed):
            if states.get(name, StageState.NOT_STARTED) == StageState.NOT_STARTED:
                states[name] = StageState.BLOCKED
                blocked.append(name)
        return blocked
