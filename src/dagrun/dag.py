# dag.py
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from . import conditions, matrix
from .conditions import Condition
from .errors import (
    ArtifactDeclarationError,
    CacheDeclarationError,
    ConditionError,
    CycleError,
    DuplicateIdError,
    UnknownDependencyError,
)
from .matrix import EmptyAxisPolicy
from .model import Job, JobInstance, MatrixBinding, RunContext

logger = logging.getLogger(__name__)


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency (dependency -> dependents) and in-degree maps.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateIdError(dupes)

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in job.needs or []:
            if dep not in name_set or dep == job.name:
                raise UnknownDependencyError(job=job.name, dependency=dep, known=sorted(name_set))
            # Edge dep -> job.name (dep must run before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (Kahn's algorithm).
    Jobs in one level have no dependency on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    level = sorted(n for n, d in indeg.items() if d == 0)

    levels: List[List[str]] = []
    processed = 0

    while level:
        levels.append(level)
        processed += len(level)
        nxt: Set[str] = set()
        for node in level:
            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.add(child)
        level = sorted(nxt)

    if processed != len(indeg):
        stuck = sorted(n for n, d in indeg.items() if d > 0)
        raise CycleError(_find_cycle(stuck, adj))

    return levels


def _find_cycle(stuck: List[str], adj: Dict[str, Set[str]]) -> List[str]:
    """Return one concrete cycle among the nodes Kahn could not remove."""
    stuck_set = set(stuck)
    for start in stuck:
        path: List[str] = []
        on_path: Dict[str, int] = {}
        node: Optional[str] = start
        while node is not None and node not in on_path:
            on_path[node] = len(path)
            path.append(node)
            node = next((c for c in sorted(adj.get(node, ())) if c in stuck_set), None)
        if node is not None:
            return path[on_path[node]:] + [node]
    return stuck  # unreachable for a real cycle, but keeps the error useful


@dataclass
class Expansion:
    """The instances one job contributes to a run."""
    job: str
    instances: List[JobInstance]
    # True/False when the condition was decided up front, None when it
    # needs upstream results first.
    activated: Optional[bool]


@dataclass
class JobGraph:
    jobs: Dict[str, Job]
    adj: Dict[str, Set[str]]
    levels: List[List[str]]
    conditions: Dict[str, Optional[Condition]]
    bindings: Dict[str, List[MatrixBinding]]
    warnings: List[str] = field(default_factory=list)

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        definitions: Iterable[Job],
        *,
        empty_matrix: EmptyAxisPolicy = EmptyAxisPolicy.WARN,
    ) -> "JobGraph":
        """
        Validate the declaration and freeze it into a graph.

        Raises DuplicateIdError, UnknownDependencyError, CycleError,
        ConditionError, MatrixError, ArtifactDeclarationError or
        CacheDeclarationError. Nothing is executed here.
        """
        jobs = list(definitions)
        adj, indeg = build_dag(jobs)
        levels = topo_levels(adj, indeg)
        by_name = {j.name: j for j in jobs}

        conds: Dict[str, Optional[Condition]] = {}
        bindings: Dict[str, List[MatrixBinding]] = {}
        warnings: List[str] = []

        for job in jobs:
            conds[job.name] = conditions.validate(job.condition, job.needs, owner=job.name)
            for step in job.steps:
                node = conditions.validate(step.condition, (), owner=job.name)
                if conditions.is_status_aware(node):
                    raise ConditionError(
                        str(step.condition), "step conditions cannot refer to job results"
                    )
            bindings[job.name] = matrix.expand(job.matrix, empty_matrix, job=job.name)
            if job.matrix is not None and job.matrix.axes and not bindings[job.name]:
                warnings.append(f"job '{job.name}' has an empty matrix and contributes no instances")

        graph = cls(jobs=by_name, adj=adj, levels=levels, conditions=conds, bindings=bindings,
                    warnings=warnings)
        graph._check_artifacts()
        graph._check_caches()
        logger.debug("Built job graph: %s", levels)
        return graph

    def _check_artifacts(self) -> None:
        for job in self.jobs.values():
            names = [o.name for o in job.artifact_outputs]
            dupes = sorted({n for n in names if names.count(n) > 1})
            if dupes:
                raise ArtifactDeclarationError(f"Job '{job.name}' declares artifact(s) {dupes} twice")

            ancestors = self.ancestors(job.name)
            for inp in job.artifact_inputs:
                if inp.job not in self.jobs:
                    raise ArtifactDeclarationError(
                        f"Job '{job.name}' downloads '{inp.name}' from unknown job '{inp.job}'"
                    )
                if inp.job not in ancestors:
                    raise ArtifactDeclarationError(
                        f"Job '{job.name}' downloads '{inp.name}' from '{inp.job}', "
                        f"which is not one of its dependencies"
                    )
                produced = {o.name for o in self.jobs[inp.job].artifact_outputs}
                if inp.name not in produced:
                    raise ArtifactDeclarationError(
                        f"Job '{inp.job}' does not upload an artifact named '{inp.name}' "
                        f"(needed by '{job.name}')"
                    )

    def _check_caches(self) -> None:
        for job in self.jobs.values():
            paths = [c.path for c in job.caches]
            for spec in job.caches:
                if not spec.path.strip() or not spec.key.strip():
                    raise CacheDeclarationError(f"Job '{job.name}' has a cache without a path or a key")
                if any(not k.strip() for k in spec.restore_keys):
                    raise CacheDeclarationError(
                        f"Job '{job.name}' has an empty restore key for cache '{spec.path}'"
                    )
            dupes = sorted({p for p in paths if paths.count(p) > 1})
            if dupes:
                raise CacheDeclarationError(f"Job '{job.name}' caches {dupes} twice")

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def batches(self) -> List[List[str]]:
        return [list(level) for level in self.levels]

    def order(self) -> List[str]:
        return [name for level in self.levels for name in level]

    def dependencies(self, job: str) -> List[str]:
        return sorted(set(self.jobs[job].needs))

    def dependents(self, job: str) -> List[str]:
        return sorted(self.adj.get(job, set()))

    def ancestors(self, job: str) -> Set[str]:
        seen: Set[str] = set()
        queue = deque(self.jobs[job].needs)
        while queue:
            dep = queue.popleft()
            if dep in seen:
                continue
            seen.add(dep)
            queue.extend(self.jobs[dep].needs)
        return seen

    def condition(self, job: str) -> Optional[Condition]:
        return self.conditions[job]

    def status_aware(self, job: str) -> bool:
        return conditions.is_status_aware(self.conditions[job])

    # ------------------------------------------------------------------
    # instance materialization
    # ------------------------------------------------------------------

    def instances_for(self, job: str, context: RunContext, start_index: int = 0) -> Expansion:
        """
        Apply the job's condition, then its matrix, to get its instances.

        - plain condition false -> one placeholder instance (to be Skipped)
        - plain condition true  -> one instance per matrix binding (maybe zero)
        - status-aware condition -> matrix instances, condition decided later
        """
        node = self.conditions[job]
        activated: Optional[bool]
        if conditions.is_status_aware(node):
            activated = None
        else:
            activated = conditions.evaluate(node, context)

        if activated is False:
            return Expansion(job=job, instances=[JobInstance(index=start_index, job=job)], activated=False)

        spec = self.jobs[job].matrix
        if spec is None or not spec.axes:
            instances = [JobInstance(index=start_index, job=job)]
        else:
            instances = [
                JobInstance(index=start_index + i, job=job, binding=b)
                for i, b in enumerate(self.bindings[job])
            ]
        return Expansion(job=job, instances=instances, activated=activated)
