from __future__ import annotations

import threading

import pytest

from releaseci.conditions import on_tag
from releaseci.dsl import job, matrix, sh, triggers
from releaseci.dsl import workflow as wf
from releaseci.model import ProducedArtifact
from releaseci.runner import TaskInvocation, TaskResult
from releaseci.ui.console import Console, set_console

PLATFORMS = [
    {"os": "linux", "arch": "x64", "target": "x86_64-unknown-linux-gnu"},
    {"os": "windows", "arch": "x64", "target": "x86_64-pc-windows-msvc"},
    {"os": "macos", "arch": "x64", "target": "x86_64-apple-darwin"},
    {"os": "macos", "arch": "arm64", "target": "aarch64-apple-darwin"},
]


class FakeRunner:
    """
    In-memory task runner.

    Every invocation is recorded. Instances listed in `fail` exit 1, those in
    `no_upload` succeed without producing anything, `raise_for` raise. Build
    instances upload one `<artifact>` payload carrying their platform tag.
    An optional `hook(invocation)` runs first (used to block or synchronize).
    """

    def __init__(self):
        self.calls: list[TaskInvocation] = []
        self.fail: set[str] = set()
        self.no_upload: set[str] = set()
        self.raise_for: set[str] = set()
        self.hook = None
        self._lock = threading.Lock()

    def __call__(self, inv: TaskInvocation) -> TaskResult:
        with self._lock:
            self.calls.append(inv)
        if self.hook is not None:
            self.hook(inv)
        if inv.instance_id in self.raise_for:
            raise RuntimeError(f"runner crashed in {inv.instance_id}")
        if inv.instance_id in self.fail or inv.job_name in self.fail:
            return TaskResult(exit_code=1, detail=f"{inv.instance_id} failed")
        if inv.cancelled:
            return TaskResult(exit_code=130, cancelled=True)

        produced = []
        if inv.artifact_name and inv.instance_id not in self.no_upload:
            tag = inv.env.get("RELEASECI_PLATFORM_TAG", "")
            produced.append(ProducedArtifact(inv.artifact_name, tag.encode(), filename="index.node"))
        return TaskResult(artifacts=produced)

    def jobs(self) -> list[str]:
        with self._lock:
            return [c.instance_id for c in self.calls]

    def calls_for(self, job_name: str) -> list[TaskInvocation]:
        with self._lock:
            return [c for c in self.calls if c.job_name == job_name]


def release_workflow():
    return wf(
        "bindings-nodejs",
        job("integration", sh("test", "true")),
        job(
            "build",
            sh("build", "true"),
            needs=["integration"],
            condition=on_tag(),
            matrix=matrix(include=PLATFORMS),
            display_name="build-{os}-{arch}",
            upload=["*.node"],
            artifact="bindings-nodejs",
            artifact_tag="{target}",
        ),
        job(
            "publish",
            sh("publish", "true"),
            needs=["build"],
            consumes=["bindings-nodejs"],
            publish=True,
            secrets=["NPM_TOKEN"],
        ),
        on=triggers(main_branch="main", paths=["bindings/nodejs/**"]),
    )


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def workflow():
    return release_workflow()
