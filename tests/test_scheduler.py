import threading

from releaseci import settings
from releaseci.conditions import on_tag, upstream_failed
from releaseci.dsl import build, job, matrix, sh
from releaseci.dsl import workflow as wf
from releaseci.model import JobStatus, OutcomeKind, RunOutcome, SkipReason
from releaseci.orchestrator import Orchestrator
from releaseci.runner import ShellTaskRunner
from releaseci.scheduler import aggregate_status
from releaseci.trigger import RawEvent

TAG_REF = "refs/tags/v1.2.3"
SECRETS = {"NPM_TOKEN": "s3cret"}


def _orchestrator(workflow, runner, **kw):
    kw.setdefault("secrets", SECRETS)
    kw.setdefault("max_workers", 4)
    return Orchestrator(workflow, runner, **kw)


def _by_id(run):
    return {i.instance_id: i for i in run.all_instances()}


def test_aggregate_status():
    S = JobStatus
    assert aggregate_status([]) is S.SUCCEEDED
    assert aggregate_status([S.SUCCEEDED, S.SUCCEEDED]) is S.SUCCEEDED
    assert aggregate_status([S.SUCCEEDED, S.FAILED, S.CANCELLED]) is S.FAILED
    assert aggregate_status([S.SUCCEEDED, S.CANCELLED, S.SKIPPED]) is S.CANCELLED
    assert aggregate_status([S.SKIPPED, S.SKIPPED]) is S.SKIPPED
    assert aggregate_status([S.SUCCEEDED, S.RUNNING]) is S.RUNNING
    assert aggregate_status([S.SUCCEEDED, S.PENDING]) is S.PENDING


def test_push_to_main_runs_integration_only(workflow, runner):
    orch = _orchestrator(workflow, runner)
    run = orch.submit(RawEvent("push", "refs/heads/main"))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.completed(published=False)
    assert str(outcome) == "Completed(skipped)"
    assert runner.jobs() == ["integration"]

    insts = _by_id(run)
    assert insts["integration"].status is JobStatus.SUCCEEDED
    for i in range(4):
        assert insts[f"build[{i}]"].status is JobStatus.SKIPPED
        assert insts[f"build[{i}]"].reason is SkipReason.CONDITION_NOT_MET
    assert insts["publish"].status is JobStatus.SKIPPED
    assert insts["publish"].reason is SkipReason.PUBLISH_DENIED


def test_release_tag_builds_every_platform_and_publishes_once(workflow, runner):
    orch = _orchestrator(workflow, runner)
    run = orch.submit(RawEvent("push", TAG_REF))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.completed(published=True)
    assert str(outcome) == "Completed(published)"

    (publish,) = runner.calls_for("publish")
    merged = publish.artifacts["bindings-nodejs"]
    assert [a.platform_tag for a in merged] == [
        "aarch64-apple-darwin",
        "x86_64-apple-darwin",
        "x86_64-pc-windows-msvc",
        "x86_64-unknown-linux-gnu",
    ]
    assert all(a.payload == a.platform_tag.encode() for a in merged)

    # publish starts only after every build instance was handed out
    ids = runner.jobs()
    assert ids.index("publish") > max(ids.index(f"build[{i}]") for i in range(4))
    # artifacts do not outlive the run
    assert orch.store.names(run.run_id) == []


def test_matrix_siblings_run_in_parallel_with_isolated_env(workflow, runner):
    barrier = threading.Barrier(4, timeout=5)

    def hook(inv):
        if inv.job_name == "build":
            barrier.wait()

    runner.hook = hook
    orch = _orchestrator(workflow, runner)
    outcome = orch.handle(RawEvent("tagged-push", TAG_REF))

    assert outcome.kind is OutcomeKind.COMPLETED
    builds = runner.calls_for("build")
    assert len(builds) == 4
    assert len({id(b.env) for b in builds}) == 4
    for b in builds:
        assert b.env["MATRIX_TARGET"] == b.env["RELEASECI_PLATFORM_TAG"] == b.axis_binding["target"]
        assert b.env["RELEASECI_REF"] == TAG_REF


def test_secrets_only_reach_publish(workflow, runner):
    orch = _orchestrator(workflow, runner)
    orch.handle(RawEvent("tagged-push", TAG_REF))

    for call in runner.calls:
        if call.job_name == "publish":
            assert call.env["NPM_TOKEN"] == "s3cret"
        else:
            assert "NPM_TOKEN" not in call.env
        assert call.withheld == ["NPM_TOKEN"]


def test_failed_build_instance_blocks_publish(workflow, runner):
    runner.fail.add("build[1]")
    orch = _orchestrator(workflow, runner)
    run = orch.submit(RawEvent("tagged-push", TAG_REF))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.failed(at="build")
    assert str(outcome) == "Failed(at: build)"
    insts = _by_id(run)
    # siblings are not failed fast
    assert [insts[f"build[{i}]"].status for i in range(4)] == [
        JobStatus.SUCCEEDED,
        JobStatus.FAILED,
        JobStatus.SUCCEEDED,
        JobStatus.SUCCEEDED,
    ]
    assert insts["build[1]"].exit_code == 1
    assert insts["publish"].status is JobStatus.SKIPPED
    assert insts["publish"].reason is SkipReason.DEPENDENCY_NOT_SATISFIED
    assert runner.calls_for("publish") == []


def test_failed_integration_skips_everything_downstream(workflow, runner):
    runner.fail.add("integration")
    orch = _orchestrator(workflow, runner)
    run = orch.submit(RawEvent("tagged-push", TAG_REF))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.failed(at="integration")
    assert runner.jobs() == ["integration"]
    insts = _by_id(run)
    for i in range(4):
        assert insts[f"build[{i}]"].status is JobStatus.SKIPPED
        assert insts[f"build[{i}]"].reason is SkipReason.DEPENDENCY_NOT_SATISFIED
    assert insts["publish"].status is JobStatus.SKIPPED
    assert insts["publish"].reason is SkipReason.DEPENDENCY_NOT_SATISFIED
    assert insts["publish"].detail == "needs build"


def test_missing_platform_artifact_fails_publish(workflow, runner):
    runner.no_upload.add("build[2]")
    orch = _orchestrator(workflow, runner)
    run = orch.submit(RawEvent("tagged-push", TAG_REF))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.failed(at="publish")
    publish = _by_id(run)["publish"]
    assert publish.status is JobStatus.FAILED
    assert publish.reason is SkipReason.JOB_FAILURE
    assert "x86_64-apple-darwin" in publish.detail
    assert runner.calls_for("publish") == []


def test_missing_secret_fails_publish_loudly(workflow, runner):
    orch = _orchestrator(workflow, runner, secrets={})
    run = orch.submit(RawEvent("tagged-push", TAG_REF))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.failed(at="publish")
    assert "NPM_TOKEN" in _by_id(run)["publish"].detail
    assert runner.calls_for("publish") == []


def test_runner_exception_fails_the_instance(workflow, runner):
    runner.raise_for.add("integration")
    orch = _orchestrator(workflow, runner)
    run = orch.submit(RawEvent("push", "refs/heads/main"))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.failed(at="integration")
    assert "runner crashed" in _by_id(run)["integration"].detail


def test_inactive_trigger_schedules_nothing(workflow, runner):
    orch = _orchestrator(workflow, runner)
    run = orch.submit(RawEvent("pull-request", "refs/pull/1/merge", changed_files=("README.md",)))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.completed(published=False)
    assert run.all_instances() == []
    assert runner.calls == []


def test_tolerant_job_can_react_to_upstream_failure(runner):
    runner.fail.add("build")
    flow = wf(
        "notify",
        job("build", sh("b", "true")),
        job(
            "report",
            sh("r", "true"),
            needs=["build"],
            condition=upstream_failed("build"),
            tolerate_upstream_failure=True,
        ),
        job("deploy", sh("d", "true"), needs=["build"]),
    )
    orch = _orchestrator(flow, runner)
    run = orch.submit(RawEvent("push", "refs/heads/main"))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.failed(at="build")
    assert sorted(runner.jobs()) == ["build", "report"]
    assert _by_id(run)["deploy"].reason is SkipReason.DEPENDENCY_NOT_SATISFIED


def test_builder_tolerant_job_runs_after_failure(runner):
    runner.fail.add("build")
    report = (
        build("report")
        .depends_on("build")
        .define_step("r", "true")
        .when(upstream_failed("build"))
        .tolerates_failure()
        .build()
    )
    flow = wf("notify", job("build", sh("b", "true")), report)
    outcome = _orchestrator(flow, runner).handle(RawEvent("push", "refs/heads/main"))

    assert outcome == RunOutcome.failed(at="build")
    assert sorted(runner.jobs()) == ["build", "report"]


def test_condition_skip_before_publish_is_still_a_gate_decision(runner):
    flow = wf(
        "chain",
        job("prepare", sh("p", "true"), condition=on_tag()),
        job("package", sh("k", "true"), needs=["prepare"]),
        job("publish", sh("u", "true"), needs=["package"], publish=True),
    )
    orch = _orchestrator(flow, runner)
    run = orch.submit(RawEvent("push", "refs/heads/main"))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.completed(published=False)
    insts = _by_id(run)
    assert insts["package"].reason is SkipReason.DEPENDENCY_NOT_SATISFIED
    assert insts["publish"].reason is SkipReason.PUBLISH_DENIED


def test_matrix_job_env_carries_spec_env(runner):
    flow = wf(
        "env",
        job("check", sh("c", "true"), matrix=matrix(py=["3.11", "3.12"]), env={"CI": "1"}),
    )
    orch = _orchestrator(flow, runner)
    orch.handle(RawEvent("push", "refs/heads/main"))

    envs = sorted((c.env["MATRIX_PY"], c.env["CI"], c.env["RELEASECI_JOB"]) for c in runner.calls)
    assert envs == [("3.11", "1", "check[0]"), ("3.12", "1", "check[1]")]


def _shell_release(build_cmd):
    return wf(
        "shell-release",
        job("integration", sh("test", 'printf "${NPM_TOKEN:-unset}" > integration.txt')),
        job(
            "build",
            sh("build", build_cmd),
            needs=["integration"],
            matrix=matrix(os=["linux", "macos"]),
            upload=["*.node"],
            artifact="native",
            artifact_tag="{os}",
        ),
        job(
            "publish",
            sh("publish", 'printf "$NPM_TOKEN" > published.txt'),
            needs=["build"],
            consumes=["native"],
            publish=True,
            secrets=["NPM_TOKEN"],
        ),
    )


def test_host_secrets_never_reach_build_shells(tmp_path, monkeypatch):
    monkeypatch.setenv("NPM_TOKEN", "s3cret")
    flow = _shell_release('printf "${NPM_TOKEN:-unset}" > index.$MATRIX_OS.node')
    orch = Orchestrator(
        flow,
        ShellTaskRunner(tmp_path),
        secrets=settings.load_secrets(["NPM_TOKEN"]),
        max_workers=4,
        keep_artifacts=True,
    )
    run = orch.submit(RawEvent("tagged-push", TAG_REF))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.completed(published=True)
    assert (tmp_path / "integration.txt").read_text() == "unset"
    assert orch.store.get_all(run.run_id, "native") == [("linux", b"unset"), ("macos", b"unset")]
    assert (tmp_path / "published.txt").read_text() == "s3cret"


def test_matrix_siblings_upload_only_their_own_outputs(tmp_path):
    flow = _shell_release('printf "$MATRIX_OS" > index.$MATRIX_OS.node')
    orch = Orchestrator(
        flow,
        ShellTaskRunner(tmp_path),
        secrets=SECRETS,
        max_workers=4,
        keep_artifacts=True,
    )
    run = orch.submit(RawEvent("tagged-push", TAG_REF))
    outcome = orch.execute(run)

    assert outcome == RunOutcome.completed(published=True)
    stored = [(a.platform_tag, a.filename, a.payload) for a in orch.store.artifacts(run.run_id, "native")]
    assert stored == [
        ("linux", "index.linux.node", b"linux"),
        ("macos", "index.macos.node", b"macos"),
    ]
    # builds ran in private copies, the checkout stays clean
    assert list(tmp_path.glob("*.node")) == []
