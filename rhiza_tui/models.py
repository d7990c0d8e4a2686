from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any


# =============================================================================
# Repositories and their status
# =============================================================================

@dataclass(frozen=True)
class Repository:
    name: str
    path: Path


@dataclass
class TemplateInfo:
    """Drift of a repository against the template it was generated from."""
    url: str
    branch: str
    behind: int = 0
    error: str | None = None


@dataclass
class RepoStatus:
    name: str
    path: Path
    branch: str
    dirty: bool = False
    ahead: int = 0
    behind: int = 0
    error: str | None = None
    template: TemplateInfo | None = None

    @classmethod
    def loading(cls, repo: Repository) -> "RepoStatus":
        return cls(name=repo.name, path=repo.path, branch="loading...")

    def summary(self) -> str:
        """One-line description, e.g. ``main · clean · ↑0 ↓2 · template: ↓3``."""
        if self.error:
            return f"error: {self.error}"
        parts = [
            self.branch,
            "dirty" if self.dirty else "clean",
            f"↑{self.ahead} ↓{self.behind}",
        ]
        if self.template is not None:
            parts.append(f"template: {self.template_label()}")
        return " · ".join(parts)

    def template_label(self) -> str:
        if self.template is None:
            return "-"
        if self.template.error:
            return "error"
        if self.template.behind > 0:
            return f"↓{self.template.behind}"
        return "up-to-date"


# =============================================================================
# Operations and completion events
# =============================================================================

class Operation(Enum):
    REFRESH = "refresh"
    PULL = "pull"
    FETCH = "fetch"
    SYNC = "sync"


class EventKind(Enum):
    STATUS = "status"
    PULL = "pull"
    FETCH = "fetch"
    SYNC = "sync"
    CHANGES = "changes"
    COMMIT = "commit"


OPERATION_EVENTS = {
    Operation.REFRESH: EventKind.STATUS,
    Operation.PULL: EventKind.PULL,
    Operation.FETCH: EventKind.FETCH,
    Operation.SYNC: EventKind.SYNC,
}


@dataclass(frozen=True)
class Completion:
    """The one event a launched task emits when it finishes.

    ``generation`` is the batch the task belongs to, or None for follow-up
    tasks that are not counted against a batch. ``payload`` depends on kind:
    a RepoStatus for STATUS, the captured ``git status`` text (or None when
    clean) for CHANGES, a CommitOutcome for COMMIT.
    """
    kind: EventKind
    index: int
    generation: int | None = None
    payload: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# Commit prompt and controller follow-ups
# =============================================================================

class CommitMode(Enum):
    CURRENT_BRANCH = "current"
    NEW_PR_BRANCH = "pr"


@dataclass
class CommitPrompt:
    repo_index: int
    status_text: str
    mode: CommitMode = CommitMode.CURRENT_BRANCH


class MessageKind(Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


class Action(Enum):
    REFRESH = "refresh"
    CHECK_CHANGES = "check_changes"
    COMMIT = "commit"
    CLEAR_MESSAGE = "clear_message"


@dataclass(frozen=True)
class FollowUp:
    action: Action
    index: int = -1
    mode: CommitMode | None = None
    serial: int = 0
