# scheduler.py
from __future__ import annotations

import os
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional

from .artifacts import ArtifactStore
from .dag import ancestors, topo_order
from .errors import CIError, DuplicateArtifactError, MissingSecretError
from .gate import PublishGate
from .matrix import expand_job
from .model import (
    ConcurrencyKey,
    JobInstance,
    JobSpec,
    JobStatus,
    RunOutcome,
    SkipReason,
    TriggerContext,
    Workflow,
)
from .runner import TaskInvocation, TaskResult, TaskRunner
from .ui.console import get_console


def aggregate_status(statuses: Iterable[JobStatus]) -> JobStatus:
    """
    Fold instance (or dependency) statuses into one:
      - any still pending/running -> running/pending
      - all succeeded (or nothing) -> succeeded
      - else failed > cancelled > skipped
    """
    statuses = list(statuses)
    if any(s is JobStatus.RUNNING for s in statuses):
        return JobStatus.RUNNING
    if any(s is JobStatus.PENDING for s in statuses):
        return JobStatus.PENDING
    if all(s is JobStatus.SUCCEEDED for s in statuses):
        return JobStatus.SUCCEEDED
    for s in (JobStatus.FAILED, JobStatus.CANCELLED):
        if s in statuses:
            return s
    return JobStatus.SKIPPED


class Run:
    """
    One execution of a workflow for one trigger context.

    Owns the expanded instances of every job spec. `lock` guards instance
    state so cancellation (from the admitting thread) and result recording
    (from the scheduler thread) never interleave.
    """

    def __init__(self, workflow: Workflow, context: TriggerContext, *, run_id: Optional[str] = None):
        self.run_id = run_id or uuid.uuid4().hex
        self.workflow = workflow
        self.context = context
        self.key = ConcurrencyKey.for_context(workflow.name, context)
        self.specs: Dict[str, JobSpec] = {j.name: j for j in workflow.jobs}
        self.order: List[str] = topo_order(workflow.jobs)

        # inactive triggers schedule nothing at all
        self.instances: Dict[str, List[JobInstance]] = (
            {name: expand_job(self.specs[name]) for name in self.order} if context.active else {}
        )

        self.lock = threading.RLock()
        self.cancel_event = threading.Event()
        self.superseded_by: Optional[str] = None
        self.supersedes: Optional[str] = None
        self.outcome: Optional[RunOutcome] = None
        self.created_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None

    # -- state ----------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def is_terminal(self) -> bool:
        with self.lock:
            if self.outcome is not None:
                return True
            return all(i.status.terminal for i in self.all_instances())

    def all_instances(self) -> List[JobInstance]:
        return [i for name in self.order for i in self.instances.get(name, [])]

    def aggregate(self, name: str) -> JobStatus:
        with self.lock:
            return aggregate_status(i.status for i in self.instances.get(name, []))

    def aggregates(self) -> Dict[str, JobStatus]:
        with self.lock:
            return {name: self.aggregate(name) for name in self.instances}

    def cancel(self, *, superseded_by: Optional[str] = None) -> bool:
        """
        Cooperative cancellation. Pending instances are cancelled at once;
        running ones see `cancel_event` and are recorded as cancelled when
        they return. Returns False if there was nothing left to cancel.
        """
        with self.lock:
            if self.is_terminal:
                return False
            self.cancel_event.set()
            self.superseded_by = superseded_by
            for inst in self.all_instances():
                if inst.status is JobStatus.PENDING:
                    inst.status = JobStatus.CANCELLED
                    inst.reason = SkipReason.CANCELLED_BY_SUPERSESSION
            return True

    def finish(self, outcome: RunOutcome) -> None:
        with self.lock:
            self.outcome = outcome
            self.finished_at = datetime.now(timezone.utc)

    def statuses(self) -> Dict[str, str]:
        with self.lock:
            return {i.label: i.status.value for i in self.all_instances()}

    def to_dict(self) -> dict:
        with self.lock:
            return {
                "run_id": self.run_id,
                "workflow": self.workflow.name,
                "ref": self.context.ref,
                "event_kind": self.context.event_kind.value,
                "is_tag_ref": self.context.is_tag_ref,
                "active": self.context.active,
                "concurrency_key": str(self.key),
                "superseded_by": self.superseded_by,
                "supersedes": self.supersedes,
                "outcome": self.outcome.to_dict() if self.outcome else None,
                "jobs": [
                    {
                        "instance_id": i.instance_id,
                        "job": i.spec_name,
                        "name": i.label,
                        "axis_binding": dict(i.axis_binding),
                        "platform_tag": i.platform_tag,
                        "status": i.status.value,
                        "reason": i.reason.value if i.reason else None,
                        "exit_code": i.exit_code,
                        "detail": i.detail,
                    }
                    for i in self.all_instances()
                ],
            }


class Scheduler:
    """
    Event-driven DAG walk over a Run.

    A job spec is resolved as soon as every dependency aggregate is terminal;
    its instances are then skipped, cancelled, failed (publish wiring) or
    submitted to the pool. The loop blocks on the first in-flight completion
    and re-scans; nothing polls.
    """

    def __init__(
        self,
        task_runner: TaskRunner,
        store: ArtifactStore,
        *,
        gate: Optional[PublishGate] = None,
        secrets: Optional[Mapping[str, str]] = None,
        max_workers: int | None = None,
    ):
        self.task_runner = task_runner
        self.store = store
        self.gate = gate or PublishGate()
        self.secrets = dict(secrets or {})
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(2, c - 1)
        self.max_workers = max_workers

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(self, run: Run) -> RunOutcome:
        if not run.context.active:
            outcome = RunOutcome.completed(published=False)
            run.finish(outcome)
            return outcome

        unresolved: List[str] = list(run.order)
        in_flight: Dict[Future, JobInstance] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while True:
                self._resolve_ready(run, unresolved, pool, in_flight)
                if not in_flight:
                    break

                done, _ = wait(list(in_flight.keys()), return_when=FIRST_COMPLETED)
                for fut in done:
                    inst = in_flight.pop(fut)
                    self._record(run, inst, fut)

        if run.cancelled:
            # nothing from a superseded run may reach publish or outlive it
            self.store.expire(run.run_id)

        outcome = self._outcome(run)
        run.finish(outcome)
        return outcome

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _resolve_ready(
        self,
        run: Run,
        unresolved: List[str],
        pool: ThreadPoolExecutor,
        in_flight: Dict[Future, JobInstance],
    ) -> None:
        # skips cascade, so keep going until a pass changes nothing
        progress = True
        while progress:
            progress = False
            for name in list(unresolved):
                spec = run.specs[name]
                deps = {d: run.aggregate(d) for d in spec.needs}
                if any(not s.terminal for s in deps.values()):
                    continue
                unresolved.remove(name)
                progress = True
                self._resolve_spec(run, spec, deps, pool, in_flight)

    def _resolve_spec(
        self,
        run: Run,
        spec: JobSpec,
        deps: Dict[str, JobStatus],
        pool: ThreadPoolExecutor,
        in_flight: Dict[Future, JobInstance],
    ) -> None:
        console = get_console()
        instances = run.instances[spec.name]

        with run.lock:
            if run.cancelled:
                self._mark(instances, JobStatus.CANCELLED, SkipReason.CANCELLED_BY_SUPERSESSION)
                return

            upstream = run.aggregates()
            inputs = {}
            extra_env: Dict[str, str] = {}

            # a failure upstream means "could not run"; the gate only judges
            # runs whose dependencies finished without failing
            if spec.publish and not self._failed_upstream(run, spec):
                decision = self.gate.authorize(run.context, aggregate_status(deps.values()))
                if not decision.allowed:
                    self._mark(instances, JobStatus.SKIPPED, SkipReason.PUBLISH_DENIED, decision.reason)
                    for inst in instances:
                        console.print_job_skipped(inst.label, f"publish denied: {decision.reason}")
                    return
            elif (spec.publish or not spec.tolerate_upstream_failure) and any(
                s is not JobStatus.SUCCEEDED for s in deps.values()
            ):
                blocked = sorted(d for d, s in deps.items() if s is not JobStatus.SUCCEEDED)
                detail = f"needs {', '.join(blocked)}"
                self._mark(instances, JobStatus.SKIPPED, SkipReason.DEPENDENCY_NOT_SATISFIED, detail)
                for inst in instances:
                    console.print_job_skipped(inst.label, detail)
                return

            if spec.condition is not None and not spec.condition(run.context, upstream):
                detail = f"condition {spec.condition.description} is false"
                self._mark(instances, JobStatus.SKIPPED, SkipReason.CONDITION_NOT_MET, detail)
                for inst in instances:
                    console.print_job_skipped(inst.label, detail)
                return

            if spec.consumes or spec.secrets:
                try:
                    inputs = self._merged_inputs(run, spec)
                    extra_env = self._secrets_for(spec)
                except CIError as e:
                    self._mark(instances, JobStatus.FAILED, SkipReason.JOB_FAILURE, e.message)
                    for inst in instances:
                        console.print_failure(inst.label, str(e), is_job=True)
                    return

            for inst in instances:
                inst.status = JobStatus.RUNNING
                console.print_job_start(inst.label)
                invocation = TaskInvocation(
                    job_name=spec.name,
                    instance_id=inst.instance_id,
                    axis_binding=dict(inst.axis_binding),
                    env=self._env_for(run, spec, inst, extra_env),
                    steps=list(spec.steps),
                    upload=list(spec.upload),
                    artifact_name=spec.artifact_name,
                    artifacts=inputs,
                    withheld=self._withheld(run),
                    cancel_event=run.cancel_event,
                )
                fut = pool.submit(self.task_runner, invocation)
                in_flight[fut] = inst

    def _merged_inputs(self, run: Run, spec: JobSpec) -> dict:
        if not spec.consumes:
            return {}
        merged = self.store.merge(run.run_id, spec.consumes)
        expected: Dict[str, List[Optional[str]]] = {name: [] for name in spec.consumes}
        for producer in ancestors(run.workflow.jobs, spec.name):
            producer_spec = run.specs[producer]
            if producer_spec.artifact_name in expected:
                expected[producer_spec.artifact_name].extend(
                    i.platform_tag for i in run.instances[producer]
                )
        self.gate.verify(spec.name, merged, expected)
        return merged

    def _secrets_for(self, spec: JobSpec) -> Dict[str, str]:
        if not spec.publish:
            return {}
        missing = [n for n in spec.secrets if n not in self.secrets]
        if missing:
            raise MissingSecretError(spec.name, missing)
        return {n: self.secrets[n] for n in spec.secrets}

    @classmethod
    def _failed_upstream(cls, run: Run, spec: JobSpec) -> bool:
        """True if a dependency failed, was cancelled, or was skipped because of such a failure."""
        for dep in spec.needs:
            for inst in run.instances[dep]:
                if inst.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                    return True
                if inst.reason is SkipReason.DEPENDENCY_NOT_SATISFIED and cls._failed_upstream(run, run.specs[dep]):
                    return True
        return False

    def _withheld(self, run: Run) -> List[str]:
        names = set(self.secrets)
        for spec in run.workflow.jobs:
            names.update(spec.secrets)
        return sorted(names)

    @staticmethod
    def _env_for(run: Run, spec: JobSpec, inst: JobInstance, extra: Dict[str, str]) -> Dict[str, str]:
        env = dict(spec.env)
        env.update(
            {
                "RELEASECI_RUN_ID": run.run_id,
                "RELEASECI_WORKFLOW": run.workflow.name,
                "RELEASECI_REF": run.context.ref,
                "RELEASECI_EVENT": run.context.event_kind.value,
                "RELEASECI_JOB": inst.instance_id,
            }
        )
        for k, v in inst.axis_binding.items():
            env[f"MATRIX_{str(k).upper()}"] = str(v)
        if inst.platform_tag:
            env["RELEASECI_PLATFORM_TAG"] = inst.platform_tag
        env.update(extra)
        return env

    @staticmethod
    def _mark(instances: List[JobInstance], status: JobStatus, reason: SkipReason, detail: str = "") -> None:
        for inst in instances:
            if inst.status.terminal:
                continue
            inst.status = status
            inst.reason = reason
            inst.detail = detail

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _record(self, run: Run, inst: JobInstance, fut: Future) -> None:
        console = get_console()
        error: Optional[BaseException] = None
        result: Optional[TaskResult] = None
        try:
            result = fut.result()
        except Exception as e:
            error = e

        with run.lock:
            if run.cancelled or (result is not None and result.cancelled):
                inst.status = JobStatus.CANCELLED
                inst.reason = SkipReason.CANCELLED_BY_SUPERSESSION
                console.print_job_cancelled(inst.label)
                return

            if error is not None:
                inst.status = JobStatus.FAILED
                inst.reason = SkipReason.JOB_FAILURE
                inst.detail = str(error)
                console.print_failure(inst.label, str(error), is_job=True)
                return

            inst.exit_code = result.exit_code
            inst.detail = result.detail
            if result.exit_code != 0:
                inst.status = JobStatus.FAILED
                inst.reason = SkipReason.JOB_FAILURE
                console.print_failure(inst.label, result.detail, exit_code=result.exit_code, is_job=True)
                return

            try:
                for produced in result.artifacts:
                    self.store.put(
                        run.run_id,
                        produced.name,
                        inst.platform_tag,
                        produced.payload,
                        produced_by=inst.instance_id,
                        filename=produced.filename,
                    )
            except DuplicateArtifactError as e:
                inst.status = JobStatus.FAILED
                inst.reason = SkipReason.JOB_FAILURE
                inst.detail = e.message
                console.print_failure(inst.label, str(e), is_job=True)
                return

            inst.status = JobStatus.SUCCEEDED
            console.print_success(inst.label)

    def _outcome(self, run: Run) -> RunOutcome:
        if run.cancelled:
            return RunOutcome.cancelled()
        for name in run.order:
            if run.aggregate(name) is JobStatus.FAILED:
                return RunOutcome.failed(at=name)
        published = any(
            run.specs[name].publish and run.aggregate(name) is JobStatus.SUCCEEDED
            for name in run.order
        )
        return RunOutcome.completed(published=published)
