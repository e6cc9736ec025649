from .dsl import job, sh, matrix, triggers, workflow, wf, JobBuilder, build
from .model import EventKind, JobSpec, JobStatus, RunOutcome, Step, TriggerContext, Workflow
from .orchestrator import Orchestrator
from .runner import ShellTaskRunner, TaskInvocation, TaskResult, load_workflow
from .trigger import RawEvent, TriggerRules, evaluate

__all__ = [
    "job", "sh", "matrix", "triggers", "workflow", "wf", "JobBuilder", "build",
    "EventKind", "JobSpec", "JobStatus", "RunOutcome", "Step", "TriggerContext", "Workflow",
    "Orchestrator", "ShellTaskRunner", "TaskInvocation", "TaskResult", "load_workflow",
    "RawEvent", "TriggerRules", "evaluate",
]
