import pytest

from releaseci.errors import MissingArtifactError
from releaseci.gate import Decision, PublishGate
from releaseci.model import Artifact, EventKind, JobStatus, TriggerContext

TAG = TriggerContext(EventKind.TAGGED_PUSH, "refs/tags/v1.0.0", is_tag_ref=True)
MAIN = TriggerContext(EventKind.PUSH, "refs/heads/main")


@pytest.mark.parametrize(
    "ctx,status,allowed",
    [
        (TAG, JobStatus.SUCCEEDED, True),
        (TAG, JobStatus.FAILED, False),
        (TAG, JobStatus.SKIPPED, False),
        (TAG, JobStatus.CANCELLED, False),
        (MAIN, JobStatus.SUCCEEDED, False),
        (MAIN, JobStatus.FAILED, False),
    ],
)
def test_allow_iff_tag_and_build_succeeded(ctx, status, allowed):
    assert PublishGate().authorize(ctx, status).allowed is allowed


def test_deny_reasons():
    gate = PublishGate()
    assert gate.authorize(MAIN, JobStatus.SUCCEEDED).reason == "refs/heads/main is not a release tag"
    assert gate.authorize(TAG, JobStatus.FAILED).reason == "build status is failed"


def test_decision_rendering():
    assert str(Decision.allow()) == "Allow"
    assert str(Decision.deny("nope")) == "Deny(nope)"


def _art(tag):
    return Artifact(name="bindings-nodejs", produced_by="build", payload=b"x", platform_tag=tag)


def test_verify_passes_when_every_platform_is_present():
    merged = {"bindings-nodejs": [_art("linux"), _art("macos")]}
    PublishGate().verify("publish", merged, {"bindings-nodejs": ["linux", "macos"]})


def test_verify_names_every_missing_platform():
    merged = {"bindings-nodejs": [_art("linux")]}
    with pytest.raises(MissingArtifactError) as exc:
        PublishGate().verify("publish", merged, {"bindings-nodejs": ["linux", "windows", "macos"]})
    assert exc.value.missing == {"bindings-nodejs": ["macos", "windows"]}
    assert exc.value.job == "publish"
    assert "macos|windows" in exc.value.message
