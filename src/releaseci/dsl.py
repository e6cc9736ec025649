# src/releaseci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from . import settings
from .conditions import Condition
from .matrix import Matrix
from .model import JobSpec, Step, Workflow
from .trigger import TAG_REF_PATTERN, TriggerRules


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    when: Optional[Callable[[Mapping[str, Any]], bool]] = None,
) -> Step:
    """Create a shell step. `when` gates it per matrix binding."""
    return Step(name=name, run=cmd, cwd=cwd, env=dict(env or {}), when=when)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    condition: Optional[Condition] = None,
    matrix: Optional[Matrix] = None,
    env: Optional[Dict[str, str]] = None,
    display_name: Optional[str] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    # artifacts
    upload: Optional[List[str]] = None,
    artifact: Optional[str] = None,
    artifact_tag: Optional[str] = None,
    consumes: Optional[List[str]] = None,
    # release
    publish: bool = False,
    secrets: Optional[List[str]] = None,
    environment: Optional[str] = None,
    tolerate_upstream_failure: bool = False,
) -> JobSpec:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    if upload and not artifact:
        raise ValueError(f"job({name!r}) uploads files but names no artifact")

    return JobSpec(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=condition,
        matrix=matrix,
        env=dict(env or {}),
        display_name=display_name,
        upload=list(upload or []),
        artifact_name=artifact,
        artifact_tag=artifact_tag,
        consumes=list(consumes or []),
        publish=publish,
        secrets=list(secrets or []),
        environment=environment,
        tolerate_upstream_failure=tolerate_upstream_failure,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._condition: Optional[Condition] = None
        self._matrix: Optional[Matrix] = None
        self._display_name: Optional[str] = None
        self._upload: list[str] = []
        self._artifact: Optional[str] = None
        self._artifact_tag: Optional[str] = None
        self._consumes: list[str] = []
        self._publish = False
        self._secrets: list[str] = []
        self._environment: Optional[str] = None
        self._tolerate = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, when=None):
        self._steps.append(sh(name, run, cwd=cwd, when=when))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def when(self, condition: Condition):
        self._condition = condition if self._condition is None else self._condition & condition
        return self

    def over(self, m: Matrix, display_name: Optional[str] = None):
        self._matrix = m
        self._display_name = display_name
        return self

    def uploads(self, artifact: str, *globs: str, tag: Optional[str] = None):
        self._artifact = artifact
        self._upload.extend(globs)
        self._artifact_tag = tag
        return self

    def tolerates_failure(self, tolerate: bool = True):
        """Run even when a dependency failed or was skipped (pair with upstream_failed)."""
        self._tolerate = tolerate
        return self

    def consumes(self, *artifacts: str):
        self._consumes.extend(artifacts)
        return self

    def publishes(self, *, secrets: Iterable[str] = (), environment: Optional[str] = None):
        self._publish = True
        self._secrets.extend(secrets)
        self._environment = environment
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            condition=self._condition,
            matrix=self._matrix,
            env=self._env,
            display_name=self._display_name,
            upload=self._upload,
            artifact=self._artifact,
            artifact_tag=self._artifact_tag,
            consumes=self._consumes,
            publish=self._publish,
            secrets=self._secrets,
            environment=self._environment,
            tolerate_upstream_failure=self._tolerate,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    **axes: Iterable[Any],
) -> Matrix:
    """
    Example:
        matrix(os=["linux", "macos"], arch=["x64", "arm64"])
        matrix(include=[{"os": "linux", "arch": "x64", "target": "x86_64-unknown-linux-gnu"}])
    """
    return Matrix(
        axes={k: list(v) for k, v in axes.items()},
        include=[dict(e) for e in include or []],
        exclude=[dict(e) for e in exclude or []],
    )


# ---------------------------------------------------------------------
# Triggers + workflow
# ---------------------------------------------------------------------

def triggers(
    *,
    main_branch: Optional[str] = None,
    tags: str = TAG_REF_PATTERN,
    paths: Iterable[str] = (),
    pr_branches: Iterable[str] = ("main",),
) -> TriggerRules:
    return TriggerRules(
        main_branch=main_branch or settings.MAIN_BRANCH,
        tag_pattern=tags,
        paths=tuple(paths),
        pr_branches=tuple(pr_branches),
    )


def workflow(name: str, *jobs: JobSpec, on: Optional[TriggerRules] = None) -> Workflow:
    """
    Workflow definition helper.

        from releaseci.dsl import workflow as wf, job, sh, triggers

        def workflow():
            return wf("bindings", job(...), job(...), on=triggers(paths=["bindings/**"]))
    """
    return Workflow(name=name, jobs=list(jobs), triggers=on)


wf = workflow
