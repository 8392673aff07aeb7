"""
Task Decomposer — Declared Stages to Subtask DAG

The job request declares its stages; the decomposer only structures them:
sequential stages become chained dependencies, members of a ``parallel``
group become siblings with no edge, and an explicit ``depends_on`` list
overrides the implicit chain. Nothing is invented. Every check happens
synchronously at submission time.

Request shape::

    {
        "name": "quarterly-report",
        "payload": {...},                 # handed to every agent
        "impact": 2500.0,                 # default for steps
        "reversible": true,               # default for steps
        "stages": [
            {"parallel": [{"capability": "summarize"}, {"capability": "translate"}]},
            {"capability": "merge", "reversible": false},
        ],
    }
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from governor.engine.registry import AgentRegistry
from governor.errors import MalformedJobError
from governor.models import Subtask, SubtaskStatus

STEP_KEYS = {"capability", "id", "params", "impact", "reversible", "depends_on"}


@dataclass
class _Step:
    local_id: str
    capability: str
    stage: int
    params: dict[str, Any]
    impact: float
    reversible: bool
    depends_on: list[str] | None


@dataclass
class TaskGraph:
    """Subtask dependency graph for one job."""

    nodes: dict[str, Subtask] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.nodes)

    def dependents(self, subtask_id: str) -> list[str]:
        return sorted(sid for sid, st in self.nodes.items() if subtask_id in st.dependencies)

    def ready(self, done_ids: Iterable[str] | None = None) -> list[Subtask]:
        """Queued subtasks whose dependencies are all done, in id order."""
        done = (
            set(done_ids)
            if done_ids is not None
            else {sid for sid, st in self.nodes.items() if st.status == SubtaskStatus.DONE}
        )
        return [
            st
            for sid, st in sorted(self.nodes.items())
            if st.status == SubtaskStatus.QUEUED and st.dependencies <= done
        ]

    def topological_order(self) -> list[str]:
        """Kahn's algorithm with id tie-break. Raises on cycles."""
        indegree = {sid: len(st.dependencies) for sid, st in self.nodes.items()}
        order: list[str] = []
        frontier = sorted(sid for sid, n in indegree.items() if n == 0)
        while frontier:
            sid = frontier.pop(0)
            order.append(sid)
            for dep in self.dependents(sid):
                indegree[dep] -= 1
                if indegree[dep] == 0:
                    frontier.append(dep)
            frontier.sort()
        if len(order) != len(self.nodes):
            cyclic = sorted(set(self.nodes) - set(order))
            raise MalformedJobError(f"dependency cycle among {cyclic}", subtasks=cyclic)
        return order


def _as_float(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise MalformedJobError(f"{what} must be a number, got {value!r}")
    if value < 0:
        raise MalformedJobError(f"{what} must be >= 0, got {value}")
    return float(value)


def _as_bool(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise MalformedJobError(f"{what} must be a boolean, got {value!r}")
    return value


def _parse_step(raw: Any, stage: int, defaults: Mapping[str, Any]) -> _Step:
    if not isinstance(raw, Mapping):
        raise MalformedJobError(f"stage {stage}: step must be an object, got {raw!r}")
    unknown = set(raw) - STEP_KEYS
    if unknown:
        raise MalformedJobError(f"stage {stage}: unknown step keys {sorted(unknown)}")

    capability = raw.get("capability")
    if not isinstance(capability, str) or not capability.strip():
        raise MalformedJobError(f"stage {stage}: step needs a capability tag")

    local_id = raw.get("id")
    if local_id is not None and (not isinstance(local_id, str) or not local_id.strip()):
        raise MalformedJobError(f"stage {stage}: step id must be a non-empty string")

    params = raw.get("params", {})
    if not isinstance(params, Mapping):
        raise MalformedJobError(f"stage {stage}: params must be an object")

    depends_on = raw.get("depends_on")
    if depends_on is not None and (
        not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on)
    ):
        raise MalformedJobError(f"stage {stage}: depends_on must be a list of step ids")

    return _Step(
        local_id=local_id or "",
        capability=capability,
        stage=stage,
        params=dict(params),
        impact=_as_float(raw.get("impact", defaults["impact"]), f"stage {stage} impact"),
        reversible=_as_bool(
            raw.get("reversible", defaults["reversible"]), f"stage {stage} reversible"
        ),
        depends_on=depends_on,
    )


def _parse_stages(request: Mapping[str, Any]) -> list[list[_Step]]:
    stages = request.get("stages")
    if not isinstance(stages, list) or not stages:
        raise MalformedJobError("job must declare a non-empty list of stages")

    defaults = {
        "impact": _as_float(request.get("impact", 0.0), "impact"),
        "reversible": _as_bool(request.get("reversible", True), "reversible"),
    }
    parsed: list[list[_Step]] = []
    for index, stage in enumerate(stages):
        if isinstance(stage, Mapping) and "parallel" in stage:
            if set(stage) != {"parallel"}:
                raise MalformedJobError(f"stage {index}: parallel group takes no other keys")
            members = stage["parallel"]
            if not isinstance(members, list) or not members:
                raise MalformedJobError(f"stage {index}: parallel group must be a non-empty list")
            parsed.append([_parse_step(m, index, defaults) for m in members])
        else:
            parsed.append([_parse_step(stage, index, defaults)])
    return parsed


def _assign_ids(stages: list[list[_Step]]) -> None:
    """Default step id is the capability tag, suffixed when a tag repeats."""
    steps = [s for stage in stages for s in stage]
    repeats = Counter(s.capability for s in steps if not s.local_id)
    seen: Counter[str] = Counter()
    for step in steps:
        if step.local_id:
            continue
        if repeats[step.capability] > 1:
            seen[step.capability] += 1
            step.local_id = f"{step.capability}-{seen[step.capability]}"
        else:
            step.local_id = step.capability

    counts = Counter(s.local_id for s in steps)
    duplicates = sorted(k for k, n in counts.items() if n > 1)
    if duplicates:
        raise MalformedJobError(f"duplicate step ids {duplicates}")


def decompose(request: Mapping[str, Any], registry: AgentRegistry, job_id: str) -> TaskGraph:
    """
    Structure a job request's declared stages into a subtask DAG.

    Raises:
        MalformedJobError: bad shape, unknown capability, unknown dependency
            or a dependency cycle.
    """
    if not isinstance(request, Mapping):
        raise MalformedJobError("job request must be an object")

    stages = _parse_stages(request)
    _assign_ids(stages)

    known = registry.capabilities()
    unknown_caps = sorted({s.capability for stage in stages for s in stage} - known)
    if unknown_caps:
        raise MalformedJobError(
            f"no registered agent offers capabilities {unknown_caps}", capabilities=unknown_caps
        )

    local_ids = {s.local_id for stage in stages for s in stage}
    graph = TaskGraph()
    previous: list[_Step] = []
    for stage in stages:
        for step in stage:
            if step.depends_on is not None:
                missing = sorted(set(step.depends_on) - local_ids)
                if missing:
                    raise MalformedJobError(
                        f"step {step.local_id!r} depends on unknown steps {missing}"
                    )
                deps = set(step.depends_on)
            else:
                deps = {p.local_id for p in previous}
            if step.local_id in deps:
                raise MalformedJobError(f"step {step.local_id!r} depends on itself")

            subtask_id = f"{job_id}.{step.local_id}"
            graph.nodes[subtask_id] = Subtask(
                subtask_id=subtask_id,
                job_id=job_id,
                capability=step.capability,
                dependencies=frozenset(f"{job_id}.{d}" for d in deps),
                params=step.params,
                impact=step.impact,
                reversible=step.reversible,
            )
        previous = stage

    graph.topological_order()  # raises on cycles
    return graph
