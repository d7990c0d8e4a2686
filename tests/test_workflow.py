"""Tests for the sync-and-commit workflow."""

from datetime import datetime

import pytest

from rhiza_tui.models import CommitMode
from rhiza_tui.shell import run_command
from rhiza_tui.workflow import (
    COMMIT_MESSAGE,
    CommitStep,
    InvalidTransition,
    SyncState,
    SyncWorkflow,
    ToolNotFoundError,
    WorkflowStepError,
    check_for_changes,
    commit_changes,
    locate_materialize_tool,
    materialize,
    pr_branch_name,
)

from tests.conftest import FakeRunner, fail, git_commit, git_init, requires_git

NOW = datetime(2024, 1, 2, 3, 4, 5)
PR_BRANCH = "rhiza-sync-20240102-030405"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

def test_full_commit_path():
    wf = SyncWorkflow(0)
    for state in (SyncState.SYNCING, SyncState.POST_SYNC_CHECK,
                  SyncState.AWAITING_DECISION, SyncState.COMMITTING):
        wf.advance(state)
        assert wf.busy
    wf.finish()
    assert wf.state is SyncState.IDLE
    assert not wf.busy


def test_no_changes_path():
    wf = SyncWorkflow(0)
    wf.advance(SyncState.SYNCING)
    wf.advance(SyncState.POST_SYNC_CHECK)
    wf.advance(SyncState.NO_CHANGES)
    wf.finish()
    assert wf.state is SyncState.IDLE


def test_skipping_the_decision_returns_to_idle():
    wf = SyncWorkflow(0, state=SyncState.AWAITING_DECISION)
    wf.advance(SyncState.IDLE)
    assert wf.state is SyncState.IDLE


def test_failure_resets_to_idle_and_keeps_the_error():
    wf = SyncWorkflow(3)
    wf.advance(SyncState.SYNCING)
    wf.fail("rhiza exploded")
    assert wf.state is SyncState.IDLE
    assert wf.last_error == "rhiza exploded"


def test_cannot_commit_without_syncing():
    with pytest.raises(InvalidTransition):
        SyncWorkflow(0).advance(SyncState.COMMITTING)


def test_cannot_fail_while_waiting_for_the_operator():
    with pytest.raises(InvalidTransition):
        SyncWorkflow(0, state=SyncState.AWAITING_DECISION).fail("boom")


# ---------------------------------------------------------------------------
# Materialize
# ---------------------------------------------------------------------------

def test_direct_binary_is_preferred():
    assert locate_materialize_tool(lambda name: f"/usr/bin/{name}") == "rhiza"


def test_uvx_fallback():
    found = {"uvx": "/usr/bin/uvx"}
    assert locate_materialize_tool(found.get) == "uvx rhiza"


def test_missing_tool_names_both_remedies():
    with pytest.raises(ToolNotFoundError) as exc_info:
        locate_materialize_tool(lambda name: None)
    message = str(exc_info.value)
    assert "pip install rhiza" in message
    assert "uvx" in message


def test_materialize_forces_inside_the_repository(tmp_path):
    run = FakeRunner()
    materialize(tmp_path, run, locate=lambda: "uvx rhiza")
    assert run.calls == ["uvx rhiza materialize --force"]


# ---------------------------------------------------------------------------
# Post-sync check
# ---------------------------------------------------------------------------

def test_clean_after_sync_returns_none(tmp_path):
    delays = []
    run = FakeRunner({"git status --short": ""})
    assert check_for_changes(tmp_path, run, settle_delay=0.25, sleep=delays.append) is None
    assert delays == [0.25]
    assert run.calls == ["git status --short"]


def test_changes_after_sync_return_full_status(tmp_path):
    run = FakeRunner({
        "git status --short": " M Makefile",
        "git status": "On branch main\nChanges not staged for commit:\n\tmodified:   Makefile",
    })
    text = check_for_changes(tmp_path, run, sleep=lambda s: None)
    assert text.startswith("On branch main")


def test_full_status_failure_falls_back_to_short(tmp_path):
    run = FakeRunner({"git status --short": " M Makefile", "git status": fail("boom")})
    assert check_for_changes(tmp_path, run, sleep=lambda s: None) == " M Makefile"


# ---------------------------------------------------------------------------
# Commit sequence
# ---------------------------------------------------------------------------

def test_pr_branch_name_uses_timestamp():
    assert pr_branch_name("rhiza-sync", NOW) == PR_BRANCH


def test_pr_mode_creates_commits_and_pushes_with_tracking(tmp_path):
    run = FakeRunner({"git branch --show-current": "main"})
    outcome = commit_changes(tmp_path, CommitMode.NEW_PR_BRANCH, run, now=NOW)
    assert outcome.branch == PR_BRANCH
    assert run.calls == [
        "git branch --show-current",
        f"git checkout -b {PR_BRANCH}",
        "git add -A",
        "git commit -m 'chore: rhiza manage sync'",
        f"git push -u origin {PR_BRANCH}",
    ]


def test_current_branch_mode_pushes_current_branch(tmp_path):
    run = FakeRunner({"git branch --show-current": "develop"})
    outcome = commit_changes(tmp_path, CommitMode.CURRENT_BRANCH, run)
    assert outcome.branch == "develop"
    assert run.calls[-1] == "git push origin develop"
    assert not any(c.startswith("git checkout") for c in run.calls)


def test_branch_creation_failure_aborts_before_staging(tmp_path):
    run = FakeRunner({
        "git branch --show-current": "main",
        f"git checkout -b {PR_BRANCH}": fail(f"fatal: a branch named '{PR_BRANCH}' already exists", 128),
    })
    with pytest.raises(WorkflowStepError) as exc_info:
        commit_changes(tmp_path, CommitMode.NEW_PR_BRANCH, run, now=NOW)
    assert exc_info.value.step is CommitStep.CREATE_BRANCH
    assert "git add -A" not in run.calls


def test_commit_failure_after_branch_creation_is_not_rolled_back(tmp_path):
    run = FakeRunner({
        "git branch --show-current": "main",
        "git commit -m 'chore: rhiza manage sync'": fail("nothing to commit, working tree clean"),
    })
    with pytest.raises(WorkflowStepError) as exc_info:
        commit_changes(tmp_path, CommitMode.NEW_PR_BRANCH, run, now=NOW)
    err = exc_info.value
    assert str(err) == "git commit failed: nothing to commit, working tree clean"
    assert err.completed == (CommitStep.RESOLVE_BRANCH, CommitStep.CREATE_BRANCH, CommitStep.STAGE)
    # nothing after the failing step, nothing undoing earlier ones
    assert run.calls[-1].startswith("git commit")
    assert not any(c.startswith(("git push", "git branch -D", "git reset")) for c in run.calls)


def test_detached_head_cannot_commit_on_current_branch(tmp_path):
    run = FakeRunner({"git branch --show-current": ""})
    with pytest.raises(WorkflowStepError) as exc_info:
        commit_changes(tmp_path, CommitMode.CURRENT_BRANCH, run)
    assert exc_info.value.step is CommitStep.RESOLVE_BRANCH
    assert run.calls == ["git branch --show-current"]


@requires_git
def test_failed_push_leaves_branch_and_commit_in_place(tmp_path, git_env):
    path = git_init(tmp_path / "no-origin")
    git_commit(path, "base")
    (path / "generated.txt").write_text("from the template\n")

    with pytest.raises(WorkflowStepError) as exc_info:
        commit_changes(path, CommitMode.NEW_PR_BRANCH, now=NOW)

    assert exc_info.value.step is CommitStep.PUSH
    assert run_command("git branch --show-current", path) == PR_BRANCH
    assert run_command("git log -1 --format=%s", path) == COMMIT_MESSAGE
    assert run_command("git status --porcelain", path) == ""
