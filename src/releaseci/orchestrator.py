# orchestrator.py
from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Dict, Mapping, Optional

from .artifacts import ArtifactStore
from .concurrency import Admission, ConcurrencyGroupManager
from . import settings
from .dag import build_dag
from .gate import PublishGate
from .model import RunOutcome, TriggerContext, Workflow
from .runner import TaskRunner
from .scheduler import Run, Scheduler
from .trigger import RawEvent, TriggerRules, evaluate
from .ui.console import get_console

if TYPE_CHECKING:
    from .history import RunHistory


def trigger_rules(workflow: Workflow) -> TriggerRules:
    """The workflow's own rules, else the defaults with the configured main branch."""
    return workflow.triggers or TriggerRules(main_branch=settings.MAIN_BRANCH)


class Orchestrator:
    """
    Wires trigger evaluation, concurrency admission, scheduling, the artifact
    store and the publish gate together for one workflow.

        orch = Orchestrator(load_workflow("bindings_workflow.py"), ShellTaskRunner("."))
        outcome = orch.handle(RawEvent("tagged-push", "refs/tags/v1.2.3"))

    Runs that are still executing are reachable through `get_run`; once a run
    is terminal it is released from its concurrency group, its artifacts are
    expired (unless keep_artifacts) and it is recorded in `history`.
    """

    def __init__(
        self,
        workflow: Workflow,
        task_runner: TaskRunner,
        *,
        store: Optional[ArtifactStore] = None,
        concurrency: Optional[ConcurrencyGroupManager] = None,
        gate: Optional[PublishGate] = None,
        secrets: Optional[Mapping[str, str]] = None,
        max_workers: int | None = None,
        history: Optional["RunHistory"] = None,
        keep_artifacts: bool = False,
    ):
        build_dag(workflow.jobs)
        self.workflow = workflow
        self.rules = trigger_rules(workflow)
        self.store = store or ArtifactStore()
        self.concurrency = concurrency or ConcurrencyGroupManager()
        self.scheduler = Scheduler(
            task_runner,
            self.store,
            gate=gate,
            secrets=secrets,
            max_workers=max_workers,
        )
        self.history = history
        self.keep_artifacts = keep_artifacts
        self._lock = threading.Lock()
        self._runs: Dict[str, Run] = {}

    def evaluate(self, event: RawEvent) -> TriggerContext:
        return evaluate(event, self.rules)

    def submit(self, event: RawEvent) -> Run:
        """Create the run for `event` and admit it to its concurrency group."""
        run = Run(self.workflow, self.evaluate(event))
        with self._lock:
            self._runs[run.run_id] = run
        if run.context.active:
            self.admit(run)
        return run

    def admit(self, run: Run) -> Admission:
        return self.concurrency.admit(run)

    def execute(self, run: Run) -> RunOutcome:
        console = get_console()
        console.print_run_started(
            workflow=self.workflow.name,
            ref=run.context.ref,
            event=run.context.event_kind.value,
            concurrency_key=str(run.key),
            job_count=len(run.all_instances()),
        )
        if not run.context.active:
            console.print_noop(run.context.reason)

        try:
            try:
                outcome = self.scheduler.execute(run)
            finally:
                self.concurrency.release(run)
                if not self.keep_artifacts:
                    self.store.expire(run.run_id)
            if self.history is not None:
                self.history.record(run)
        finally:
            # recorded before it disappears, so lookups never miss it
            with self._lock:
                self._runs.pop(run.run_id, None)

        if run.all_instances():
            console.print_results(run.statuses())
        console.print_outcome(str(outcome))
        return outcome

    def handle(self, event: RawEvent) -> RunOutcome:
        return self.execute(self.submit(event))

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)
