from releaseci.dsl import job, sh, wf
from releaseci.orchestrator import trigger_rules
from releaseci.settings import load_secrets


def test_load_secrets_skips_absent_and_empty_values():
    env = {"NPM_TOKEN": "abc", "EMPTY": ""}
    assert load_secrets(["NPM_TOKEN", "EMPTY", "MISSING"], env) == {"NPM_TOKEN": "abc"}


def test_load_secrets_reads_process_environment(monkeypatch):
    monkeypatch.setenv("NPM_TOKEN", "from-env")
    assert load_secrets(["NPM_TOKEN"]) == {"NPM_TOKEN": "from-env"}


def test_workflow_without_triggers_uses_configured_main_branch(monkeypatch):
    monkeypatch.setattr("releaseci.settings.MAIN_BRANCH", "trunk")
    flow = wf("x", job("a", sh("a", "true")))
    assert flow.triggers is None
    assert trigger_rules(flow).main_branch == "trunk"
