# gate.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Set

from .errors import MissingArtifactError
from .model import Artifact, JobStatus, TriggerContext


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> Decision:
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> Decision:
        return cls(False, reason)

    def __str__(self) -> str:
        return "Allow" if self.allowed else f"Deny({self.reason})"


class PublishGate:
    """
    Final authorization for the publish job.

    Allow iff the run was triggered by a release tag AND the upstream build
    aggregate succeeded. Deny is a normal outcome (the publish job is skipped),
    not an error.
    """

    def authorize(self, ctx: TriggerContext, build_status: JobStatus) -> Decision:
        if not ctx.is_tag_ref:
            return Decision.deny(f"{ctx.ref} is not a release tag")
        if build_status is not JobStatus.SUCCEEDED:
            return Decision.deny(f"build status is {build_status.value}")
        return Decision.allow()

    def verify(
        self,
        job: str,
        merged: Mapping[str, List[Artifact]],
        expected: Mapping[str, Iterable[Optional[str]]],
    ) -> None:
        """
        Fail loudly when an expected platform tag is absent from the merged set.
        Raises MissingArtifactError listing every gap.
        """
        missing: Dict[str, List[Optional[str]]] = {}
        for name, tags in expected.items():
            present: Set[Optional[str]] = {a.platform_tag for a in merged.get(name, [])}
            gaps = sorted((t for t in set(tags) if t not in present), key=lambda t: t or "")
            if gaps:
                missing[name] = gaps
        if missing:
            raise MissingArtifactError(job, missing)
