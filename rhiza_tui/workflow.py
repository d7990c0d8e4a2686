"""Sync-and-commit workflow for one repository.

Idle -> Syncing -> PostSyncCheck -> NoChanges -> Idle
                                 -> AwaitingDecision -> Committing -> Idle
Any failing step goes through Error back to Idle.

The commit sequence is not atomic. When a step fails the remaining steps are
skipped and nothing already done is undone: a created branch or a local
commit stays in the repository.
"""
import logging
import shlex
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .models import CommitMode
from .shell import CommandError, Runner, run_command

log = logging.getLogger(__name__)

COMMIT_MESSAGE = "chore: rhiza manage sync"
DEFAULT_BRANCH_PREFIX = "rhiza-sync"
DEFAULT_SETTLE_DELAY = 0.5
PR_HINT = "gh pr create --title 'chore: rhiza manage sync' --body 'Sync with rhiza template'"


# =============================================================================
# State machine
# =============================================================================

class SyncState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    POST_SYNC_CHECK = "post_sync_check"
    NO_CHANGES = "no_changes"
    AWAITING_DECISION = "awaiting_decision"
    COMMITTING = "committing"
    ERROR = "error"


TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.SYNCING}),
    SyncState.SYNCING: frozenset({SyncState.POST_SYNC_CHECK, SyncState.ERROR}),
    SyncState.POST_SYNC_CHECK: frozenset(
        {SyncState.NO_CHANGES, SyncState.AWAITING_DECISION, SyncState.ERROR}
    ),
    SyncState.NO_CHANGES: frozenset({SyncState.IDLE}),
    # skipping the prompt goes straight back to idle
    SyncState.AWAITING_DECISION: frozenset({SyncState.COMMITTING, SyncState.IDLE}),
    SyncState.COMMITTING: frozenset({SyncState.IDLE, SyncState.ERROR}),
    SyncState.ERROR: frozenset({SyncState.IDLE}),
}


class InvalidTransition(Exception):
    pass


@dataclass
class SyncWorkflow:
    index: int
    state: SyncState = SyncState.IDLE
    last_error: str | None = None

    @property
    def busy(self) -> bool:
        return self.state is not SyncState.IDLE

    def advance(self, target: SyncState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        log.debug("workflow %d: %s -> %s", self.index, self.state.value, target.value)
        self.state = target

    def fail(self, error: str) -> None:
        """Record ``error`` and reset to idle via the error state."""
        self.advance(SyncState.ERROR)
        self.last_error = error
        self.advance(SyncState.IDLE)

    def finish(self) -> None:
        if self.state is SyncState.NO_CHANGES or self.state is SyncState.COMMITTING:
            self.advance(SyncState.IDLE)
        elif self.state is not SyncState.IDLE:
            raise InvalidTransition(f"cannot finish from {self.state.value}")


# =============================================================================
# Materialize
# =============================================================================

class ToolNotFoundError(Exception):
    pass


def locate_materialize_tool(which: Callable[[str], str | None] = shutil.which) -> str:
    if which("rhiza"):
        return "rhiza"
    if which("uvx"):
        return "uvx rhiza"
    raise ToolNotFoundError("rhiza CLI not found. Install with: pip install rhiza or use uvx")


def materialize(repo_path: Path, run: Runner = run_command,
                locate: Callable[[], str] = locate_materialize_tool) -> str:
    tool = locate()
    return run(f"{tool} materialize --force", repo_path)


def check_for_changes(repo_path: Path, run: Runner = run_command,
                      settle_delay: float = DEFAULT_SETTLE_DELAY,
                      sleep: Callable[[float], None] = time.sleep) -> str | None:
    """Return the full ``git status`` text if the sync left changes, else None."""
    sleep(settle_delay)
    short = run("git status --short", repo_path)
    if not short.strip():
        return None
    try:
        return run("git status", repo_path)
    except CommandError as e:
        log.debug("%s: full status failed, using short status: %s", repo_path, e)
        return short


# =============================================================================
# Commit sequence
# =============================================================================

class CommitStep(Enum):
    RESOLVE_BRANCH = "resolve current branch"
    CREATE_BRANCH = "create branch"
    STAGE = "git add"
    COMMIT = "git commit"
    PUSH = "git push"


class WorkflowStepError(Exception):
    """A commit step failed. Steps in ``completed`` were not rolled back."""

    def __init__(self, step: CommitStep, detail: str,
                 completed: tuple[CommitStep, ...] = ()) -> None:
        self.step = step
        self.detail = detail
        self.completed = completed
        super().__init__(f"{step.value} failed: {detail}")


@dataclass
class CommitOutcome:
    mode: CommitMode
    branch: str
    completed: list[CommitStep] = field(default_factory=list)


def pr_branch_name(prefix: str = DEFAULT_BRANCH_PREFIX, now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"{prefix}-{now.strftime('%Y%m%d-%H%M%S')}"


def commit_changes(repo_path: Path, mode: CommitMode, run: Runner = run_command,
                   branch_prefix: str = DEFAULT_BRANCH_PREFIX,
                   now: datetime | None = None) -> CommitOutcome:
    outcome = CommitOutcome(mode=mode, branch="")

    def step(kind: CommitStep, command: str) -> str:
        try:
            output = run(command, repo_path)
        except CommandError as e:
            raise WorkflowStepError(kind, str(e), tuple(outcome.completed)) from e
        outcome.completed.append(kind)
        return output

    current = step(CommitStep.RESOLVE_BRANCH, "git branch --show-current")
    if mode is CommitMode.NEW_PR_BRANCH:
        outcome.branch = pr_branch_name(branch_prefix, now)
        step(CommitStep.CREATE_BRANCH, f"git checkout -b {shlex.quote(outcome.branch)}")
    else:
        if not current:
            raise WorkflowStepError(CommitStep.RESOLVE_BRANCH, "HEAD is detached",
                                    tuple(outcome.completed))
        outcome.branch = current

    step(CommitStep.STAGE, "git add -A")
    step(CommitStep.COMMIT, f"git commit -m {shlex.quote(COMMIT_MESSAGE)}")
    if mode is CommitMode.NEW_PR_BRANCH:
        step(CommitStep.PUSH, f"git push -u origin {shlex.quote(outcome.branch)}")
    else:
        step(CommitStep.PUSH, f"git push origin {shlex.quote(outcome.branch)}")
    return outcome
