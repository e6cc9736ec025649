# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import WorkflowError
from .model import JobSpec


def build_dag(jobs: List[JobSpec]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from JobSpec objects and validate the wiring.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must finish BEFORE this job
    Also rejects:
      - publish jobs with a matrix (publish runs exactly once)
      - secrets requested by anything other than a publish job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise WorkflowError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        if job.publish and job.matrix is not None:
            raise WorkflowError(f"Publish job '{job.name}' cannot use a matrix")
        if job.secrets and not job.publish:
            raise WorkflowError(
                f"Job '{job.name}' requests secrets {job.secrets} but only publish jobs may receive them"
            )
        for need in job.needs:
            if need not in name_set:
                raise WorkflowError(
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    # surfaces cycles early
    topo_levels(adj, indeg)

    for job in jobs:
        if not job.consumes:
            continue
        produced = {
            jobs[names.index(a)].artifact_name for a in ancestors(jobs, job.name)
        }
        unknown = sorted(set(job.consumes) - produced)
        if unknown:
            raise WorkflowError(
                f"Job '{job.name}' consumes {unknown} but no upstream job produces them"
            )

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Jobs inside one stage do not depend on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise WorkflowError(f"DAG has a cycle (or unresolved needs). Stuck nodes: {remaining}")

    return levels


def topo_order(jobs: List[JobSpec]) -> List[str]:
    adj, indeg = build_dag(jobs)
    return [name for level in topo_levels(adj, indeg) for name in level]


def ancestors(jobs: List[JobSpec], name: str) -> Set[str]:
    """Every job `name` transitively needs."""
    by_name = {j.name: j for j in jobs}
    seen: Set[str] = set()
    stack = list(by_name[name].needs)
    while stack:
        n = stack.pop()
        if n in seen:
            continue
        seen.add(n)
        stack.extend(by_name[n].needs)
    return seen
