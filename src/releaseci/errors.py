# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class CIError(Exception):
    """
    Structured error with enough context for:
      - clean CLI output
      - the run history / HTTP surface
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class WorkflowError(ValueError):
    """The workflow definition itself is invalid (graph, matrix, wiring)."""


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class MissingArtifactError(CIError):
    def __init__(self, job: str, missing: Dict[str, List[Optional[str]]]):
        rendered = ", ".join(
            f"{name}:{'|'.join(str(t) for t in tags)}" for name, tags in sorted(missing.items())
        )
        super().__init__(
            kind="missing_artifact",
            job=job,
            step=None,
            message=f"expected platform artifacts are missing ({rendered})",
            details={"missing": {k: list(v) for k, v in missing.items()}},
        )
        self.missing = missing


class MissingSecretError(CIError):
    def __init__(self, job: str, names: List[str]):
        super().__init__(
            kind="missing_secret",
            job=job,
            step=None,
            message=f"secrets not provided: {', '.join(sorted(names))}",
            details={"secrets": sorted(names)},
        )
        self.names = sorted(names)


class DuplicateArtifactError(CIError):
    def __init__(self, job: str, name: str, platform_tag: Optional[str], filename: Optional[str]):
        super().__init__(
            kind="duplicate_artifact",
            job=job,
            step=None,
            message=f"artifact {name!r} already stored for platform {platform_tag!r}",
            details={"name": name, "platform_tag": platform_tag, "filename": filename},
        )
