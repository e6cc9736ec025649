# model.py
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .conditions import Condition
    from .matrix import Matrix
    from .trigger import TriggerRules


# ---------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"
    TAGGED_PUSH = "tagged-push"
    PULL_REQUEST = "pull-request"

    @classmethod
    def parse(cls, value: str | EventKind) -> EventKind:
        """Accept the canonical names plus the common GitHub spellings."""
        if isinstance(value, EventKind):
            return value
        normalized = value.strip().lower().replace("_", "-")
        aliases = {
            "tag": cls.TAGGED_PUSH,
            "tag-push": cls.TAGGED_PUSH,
            "pr": cls.PULL_REQUEST,
        }
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            known = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown event kind {value!r} (expected one of: {known})") from None


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class SkipReason(str, Enum):
    """Why an instance ended up somewhere other than `succeeded`."""
    JOB_FAILURE = "job-failure"
    CONDITION_NOT_MET = "condition-not-met"
    DEPENDENCY_NOT_SATISFIED = "dependency-not-satisfied"
    PUBLISH_DENIED = "publish-denied"
    CANCELLED_BY_SUPERSESSION = "cancelled-by-supersession"


# ---------------------------------------------------------------------
# Trigger side
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerContext:
    event_kind: EventKind
    ref: str
    changed_paths: FrozenSet[str] = frozenset()
    is_tag_ref: bool = False
    active: bool = True
    base_ref: Optional[str] = None
    reason: str = ""


@dataclass(frozen=True)
class ConcurrencyKey:
    workflow: str
    ref: str
    event_kind: EventKind

    @classmethod
    def for_context(cls, workflow: str, ctx: TriggerContext) -> ConcurrencyKey:
        return cls(workflow=workflow, ref=ctx.ref, event_kind=ctx.event_kind)

    def __str__(self) -> str:
        return f"{self.workflow}-{self.ref}-{self.event_kind.value}"


# Upstream results handed to conditions: spec name -> aggregate status.
UpstreamResults = Mapping[str, JobStatus]


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (step) inside a job."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    # predicate over the instance's axis binding, e.g. lambda m: m["os"] == "macos"
    when: Optional[Callable[[Mapping[str, Any]], bool]] = None

    def applies_to(self, binding: Mapping[str, Any]) -> bool:
        return self.when is None or bool(self.when(binding))


@dataclass
class JobSpec:
    """
    A job template: steps + dependencies + run condition + optional matrix.

    Artifact wiring:
      - `upload` lists globs collected after the job and stored under
        `artifact_name`, tagged with `artifact_tag` (formatted with the
        axis binding).
      - `consumes` lists artifact names merged and handed to the job.
    Only `publish` jobs may request `secrets`, and they are decided by the
    publish gate instead of a plain condition.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    condition: Optional["Condition"] = None
    matrix: Optional["Matrix"] = None
    env: Dict[str, str] = field(default_factory=dict)
    display_name: Optional[str] = None

    upload: list[str] = field(default_factory=list)
    artifact_name: Optional[str] = None
    artifact_tag: Optional[str] = None
    consumes: list[str] = field(default_factory=list)

    publish: bool = False
    secrets: list[str] = field(default_factory=list)
    environment: Optional[str] = None
    tolerate_upstream_failure: bool = False


@dataclass
class JobInstance:
    spec_name: str
    index: int = 0
    axis_binding: Dict[str, Any] = field(default_factory=dict)
    display_name: str = ""
    platform_tag: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    reason: Optional[SkipReason] = None
    exit_code: Optional[int] = None
    detail: str = ""

    @property
    def instance_id(self) -> str:
        if not self.axis_binding:
            return self.spec_name
        return f"{self.spec_name}[{self.index}]"

    @property
    def label(self) -> str:
        return self.display_name or self.instance_id


# ---------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------

def payload_digest(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True)
class ProducedArtifact:
    """What a task runner hands back before the orchestrator tags it."""
    name: str
    payload: bytes
    filename: Optional[str] = None


@dataclass(frozen=True)
class Artifact:
    name: str
    produced_by: str
    payload: bytes
    platform_tag: Optional[str] = None
    filename: Optional[str] = None

    @property
    def digest(self) -> str:
        return payload_digest(self.payload)


# ---------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------

class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunOutcome:
    kind: OutcomeKind
    published: bool = False
    failed_at: Optional[str] = None

    @classmethod
    def completed(cls, published: bool) -> RunOutcome:
        return cls(OutcomeKind.COMPLETED, published=published)

    @classmethod
    def failed(cls, at: str) -> RunOutcome:
        return cls(OutcomeKind.FAILED, failed_at=at)

    @classmethod
    def cancelled(cls) -> RunOutcome:
        return cls(OutcomeKind.CANCELLED)

    def __str__(self) -> str:
        if self.kind is OutcomeKind.COMPLETED:
            return f"Completed({'published' if self.published else 'skipped'})"
        if self.kind is OutcomeKind.FAILED:
            return f"Failed(at: {self.failed_at})"
        return "Cancelled"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "published": self.published,
            "failed_at": self.failed_at,
            "summary": str(self),
        }


@dataclass(frozen=True)
class Workflow:
    """A named set of job specs plus the rules that decide when it fires."""
    name: str
    jobs: List[JobSpec]
    triggers: Optional["TriggerRules"] = None

    def job(self, name: str) -> JobSpec:
        for spec in self.jobs:
            if spec.name == name:
                return spec
        raise KeyError(name)
