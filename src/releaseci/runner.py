# runner.py
from __future__ import annotations

import os
import runpy
import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .artifacts import materialize
from .errors import StepFailure
from .model import Artifact, ProducedArtifact, Step, Workflow
from .ui.console import get_console


# ----------------------------------------------------------------------
# Task runner contract
# ----------------------------------------------------------------------
# The orchestrator never knows how a job builds something. It hands a
# TaskInvocation to a task runner (any callable) and gets a TaskResult back:
#   (job_name, axis_binding, env) -> (exit_code, produced_artifacts)
# Cancellation is cooperative: runners are expected to check
# `invocation.cancelled` at their own checkpoints (e.g. between steps).


@dataclass
class TaskInvocation:
    job_name: str
    instance_id: str
    axis_binding: Dict[str, Any]
    env: Dict[str, str]
    steps: List[Step] = field(default_factory=list)
    upload: List[str] = field(default_factory=list)
    artifact_name: Optional[str] = None
    # merged inputs, only filled for jobs that consume artifacts
    artifacts: Dict[str, List[Artifact]] = field(default_factory=dict)
    # secret names that must not leak in from the host environment;
    # only `env` may carry them (publish jobs)
    withheld: List[str] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class TaskResult:
    exit_code: int = 0
    artifacts: List[ProducedArtifact] = field(default_factory=list)
    cancelled: bool = False
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


TaskRunner = Callable[[TaskInvocation], TaskResult]


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"releaseci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    wf = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            wf = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e) or "required" in str(e):
                raise TypeError(
                    "Your workflow() shadows the DSL helper. "
                    "Import it under another name: `from releaseci.dsl import workflow as wf`."
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        wf = globals_dict["WORKFLOW"]

    if not isinstance(wf, Workflow):
        raise TypeError(
            "Workflow file must return/define a Workflow. "
            "Define workflow() -> Workflow or WORKFLOW = Workflow(...)."
        )
    return wf


# ----------------------------------------------------------------------
# Shell task runner
# ----------------------------------------------------------------------

class ShellTaskRunner:
    """
    Default task runner: runs each step through the shell.

      - the axis binding is exported as MATRIX_<KEY> env vars
      - withheld secret names are removed from the inherited environment
      - matrix instances run in a private copy of the repo, so siblings
        never see (or upload) each other's outputs
      - steps whose `when` predicate is false for the binding are skipped
      - the cancel event is checked before every step
      - consumed artifacts are written to a temp dir exported as
        RELEASECI_ARTIFACTS_DIR
      - after the last step, files matching `upload` globs become artifacts
    """

    def __init__(
        self,
        repo_root: str | Path = ".",
        *,
        output_limit: int = 4000,
        isolate_matrix: bool = True,
        workspace_ignore: Sequence[str] = (),
    ):
        self.repo_root = Path(repo_root).resolve()
        self.output_limit = output_limit
        self.isolate_matrix = isolate_matrix
        self.workspace_ignore = tuple(workspace_ignore)

    def __call__(self, invocation: TaskInvocation) -> TaskResult:
        console = get_console()
        with tempfile.TemporaryDirectory(prefix="releaseci-") as tmp:
            root = self._workspace(invocation, Path(tmp))
            env = dict(invocation.env)
            if invocation.artifacts:
                env["RELEASECI_ARTIFACTS_DIR"] = str(materialize(invocation.artifacts, Path(tmp) / "artifacts"))

            for step in invocation.steps:
                if invocation.cancelled:
                    return TaskResult(exit_code=130, cancelled=True, detail=f"cancelled before '{step.name}'")
                if not step.applies_to(invocation.axis_binding):
                    console.print_step_skipped(invocation.instance_id, step.name)
                    continue
                console.print_step(step.name)
                try:
                    self._run_step(invocation, step, env, root)
                except StepFailure as e:
                    console.print_failure(step.name, e.stderr or str(e), exit_code=e.exit_code)
                    return TaskResult(exit_code=e.exit_code, detail=str(e))

            # collected before the private workspace goes away
            return TaskResult(exit_code=0, artifacts=self._collect(invocation, root))

    def _workspace(self, invocation: TaskInvocation, tmp: Path) -> Path:
        if not (self.isolate_matrix and invocation.axis_binding):
            return self.repo_root
        workspace = tmp / "workspace"
        shutil.copytree(
            self.repo_root,
            workspace,
            symlinks=True,
            ignore=shutil.ignore_patterns(*self.workspace_ignore) if self.workspace_ignore else None,
        )
        get_console().print_debug(f"[{invocation.instance_id}] workspace: {workspace}")
        return workspace

    def _run_step(self, invocation: TaskInvocation, step: Step, job_env: Dict[str, str], root: Path) -> None:
        cwd = (root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{invocation.instance_id}] step '{step.name}' cwd not found: {cwd}")

        env = os.environ.copy()
        for name in invocation.withheld:
            env.pop(name, None)
        env.update(job_env)
        env.update(step.env)

        proc = subprocess.run(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            capture_output=True,
        )

        if proc.returncode != 0:
            raise StepFailure(
                job=invocation.instance_id,
                step=step.name,
                cmd=step.run,
                exit_code=proc.returncode,
                stdout=proc.stdout[-self.output_limit:],
                stderr=proc.stderr[-self.output_limit:],
            )

    def _collect(self, invocation: TaskInvocation, root: Path) -> List[ProducedArtifact]:
        if not invocation.upload or not invocation.artifact_name:
            return []
        seen: set[Path] = set()
        out: List[ProducedArtifact] = []
        for pattern in invocation.upload:
            for p in sorted(root.glob(pattern)):
                if not p.is_file() or p in seen:
                    continue
                seen.add(p)
                out.append(
                    ProducedArtifact(
                        name=invocation.artifact_name,
                        payload=p.read_bytes(),
                        filename=p.name,
                    )
                )
        return out
