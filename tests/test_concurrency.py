import threading

from releaseci.concurrency import ConcurrencyGroupManager
from releaseci.model import EventKind, JobStatus, OutcomeKind, SkipReason, TriggerContext
from releaseci.orchestrator import Orchestrator
from releaseci.scheduler import Run
from releaseci.trigger import RawEvent

TAG_REF = "refs/tags/v1.2.3"
TAG = TriggerContext(EventKind.TAGGED_PUSH, TAG_REF, is_tag_ref=True)


def test_same_key_supersedes_and_cancels_pending_instances(workflow):
    manager = ConcurrencyGroupManager()
    first = Run(workflow, TAG)
    second = Run(workflow, TAG)

    assert manager.admit(first).superseded is None
    admission = manager.admit(second)

    assert admission.proceed
    assert admission.superseded is first
    assert first.cancelled
    assert first.superseded_by == second.run_id
    assert second.supersedes == first.run_id
    assert manager.current(first.key) is second
    for inst in first.all_instances():
        assert inst.status is JobStatus.CANCELLED
        assert inst.reason is SkipReason.CANCELLED_BY_SUPERSESSION


def test_different_keys_do_not_interfere(workflow):
    manager = ConcurrencyGroupManager()
    tag_run = Run(workflow, TAG)
    main_run = Run(workflow, TriggerContext(EventKind.PUSH, "refs/heads/main"))
    manager.admit(tag_run)
    manager.admit(main_run)

    assert not tag_run.cancelled
    assert not main_run.cancelled
    assert len(manager.active_keys()) == 2
    assert str(main_run.key) == "bindings-nodejs-refs/heads/main-push"


def test_release_only_forgets_the_current_run(workflow):
    manager = ConcurrencyGroupManager()
    first = Run(workflow, TAG)
    second = Run(workflow, TAG)
    manager.admit(first)
    manager.admit(second)

    manager.release(first)
    assert manager.current(first.key) is second
    manager.release(second)
    assert manager.current(first.key) is None


def test_finished_run_is_not_superseded(workflow, runner):
    orch = Orchestrator(workflow, runner, secrets={"NPM_TOKEN": "t"}, max_workers=4)
    first = orch.submit(RawEvent("tagged-push", TAG_REF))
    orch.execute(first)

    second = orch.submit(RawEvent("tagged-push", TAG_REF))
    assert second.supersedes is None
    assert first.superseded_by is None


def test_newer_run_cancels_running_build_and_its_artifacts_never_publish(workflow, runner):
    started = threading.Event()
    proceed = threading.Event()
    count = [0]
    count_lock = threading.Lock()

    def hook(inv):
        if inv.job_name != "build" or inv.env["RELEASECI_RUN_ID"] != first.run_id:
            return
        with count_lock:
            count[0] += 1
            if count[0] == 4:
                started.set()
        proceed.wait(timeout=5)

    runner.hook = hook
    orch = Orchestrator(workflow, runner, secrets={"NPM_TOKEN": "t"}, max_workers=4)

    first = orch.submit(RawEvent("tagged-push", TAG_REF))
    outcomes = {}
    worker = threading.Thread(target=lambda: outcomes.setdefault("first", orch.execute(first)))
    worker.start()

    assert started.wait(timeout=5)
    second = orch.submit(RawEvent("tagged-push", TAG_REF))
    assert first.cancelled
    assert second.supersedes == first.run_id

    proceed.set()
    worker.join(timeout=10)
    assert not worker.is_alive()

    assert outcomes["first"].kind is OutcomeKind.CANCELLED
    assert str(outcomes["first"]) == "Cancelled"
    statuses = {i.instance_id: i.status for i in first.all_instances()}
    assert statuses["integration"] is JobStatus.SUCCEEDED
    assert all(statuses[f"build[{i}]"] is JobStatus.CANCELLED for i in range(4))
    assert statuses["publish"] is JobStatus.CANCELLED
    assert orch.store.names(first.run_id) == []

    outcome = orch.execute(second)
    assert outcome.kind is OutcomeKind.COMPLETED and outcome.published

    (publish,) = runner.calls_for("publish")
    assert publish.env["RELEASECI_RUN_ID"] == second.run_id
    assert {a.produced_by for a in publish.artifacts["bindings-nodejs"]} == {f"build[{i}]" for i in range(4)}
