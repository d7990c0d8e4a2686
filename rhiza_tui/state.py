"""The dashboard's view state and the rules for applying completions to it.

Only the app thread touches a DashboardState. Tasks report back through
Completion events, and ``apply`` turns each one into state changes plus a
list of follow-ups (more tasks to start, a message to clear later).
"""
import logging
from collections import deque
from dataclasses import dataclass, field

from .dispatch import Batch
from .models import (
    Action,
    CommitMode,
    CommitPrompt,
    Completion,
    EventKind,
    FollowUp,
    MessageKind,
    Operation,
    RepoStatus,
    Repository,
)
from .workflow import PR_HINT, SyncState, SyncWorkflow

log = logging.getLogger(__name__)

NO_SELECTION = "No repositories selected. Use spacebar to select."

BATCH_MESSAGES = {
    Operation.REFRESH: "Refreshing status...",
    Operation.PULL: "Pulling repositories...",
    Operation.FETCH: "Fetching repositories...",
    Operation.SYNC: "Syncing templates...",
}


@dataclass
class DashboardState:
    repos: list[Repository]
    statuses: list[RepoStatus] = field(default_factory=list)
    cursor: int = 0
    selected: set[int] = field(default_factory=set)
    loading: bool = False
    pending_ops: int = 0
    generation: int = 0
    batch_operation: Operation | None = None
    message: str = ""
    message_kind: MessageKind = MessageKind.INFO
    message_serial: int = 0
    prompt: CommitPrompt | None = None
    queued_prompts: deque = field(default_factory=deque)
    workflows: dict[int, SyncWorkflow] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.statuses:
            self.statuses = [RepoStatus.loading(r) for r in self.repos]

    # -------------------------------------------------------------------------
    # Navigation and selection
    # -------------------------------------------------------------------------

    def move_cursor(self, delta: int) -> None:
        if self.repos:
            self.cursor = max(0, min(len(self.repos) - 1, self.cursor + delta))

    def toggle_selected(self, index: int | None = None) -> None:
        index = self.cursor if index is None else index
        if index in self.selected:
            self.selected.discard(index)
        else:
            self.selected.add(index)

    def select_all(self) -> None:
        self.selected = set(range(len(self.repos)))

    def select_none(self) -> None:
        self.selected.clear()

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def set_message(self, text: str, kind: MessageKind = MessageKind.INFO) -> list[FollowUp]:
        self.message = text
        self.message_kind = kind
        self.message_serial += 1
        if kind is MessageKind.SUCCESS:
            return [FollowUp(Action.CLEAR_MESSAGE, serial=self.message_serial)]
        return []

    def clear_message(self, serial: int) -> None:
        """Clear the message unless a newer one replaced it since ``serial``."""
        if serial == self.message_serial:
            self.message = ""
            self.message_kind = MessageKind.INFO

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def begin_batch(self, operation: Operation) -> Batch | None:
        """Start a new batch, or return None (with a message) if there is nothing to do.

        The pending counter is reset to the batch size, never added to. Work
        still running from an older batch keeps reporting, but no longer
        counts against the new one.
        """
        if operation is Operation.REFRESH:
            indices = list(range(len(self.repos)))
        else:
            if not self.selected:
                self.set_message(NO_SELECTION, MessageKind.ERROR)
                return None
            indices = sorted(self.selected)

        if operation is Operation.SYNC:
            busy = [i for i in indices if self._workflow(i).busy]
            indices = [i for i in indices if i not in busy]
            if not indices:
                self.set_message("Sync already in progress for the selected repositories",
                                 MessageKind.ERROR)
                return None
            for i in indices:
                self._workflow(i).advance(SyncState.SYNCING)

        if not indices:
            return None

        self.generation += 1
        self.pending_ops = len(indices)
        self.loading = True
        self.batch_operation = operation
        self.set_message(BATCH_MESSAGES[operation])
        return Batch(operation, self.generation, tuple(indices))

    def _count_completion(self, event: Completion) -> bool:
        """Decrement the pending counter for a current-batch event.

        Returns True when this event finished the batch.
        """
        if event.generation is None or event.generation != self.generation:
            return False
        if self.pending_ops <= 0:
            log.warning("completion for %d arrived with no operations pending", event.index)
            return False
        self.pending_ops -= 1
        if self.pending_ops == 0 and self.loading:
            self.loading = False
            return True
        return False

    # -------------------------------------------------------------------------
    # Completions
    # -------------------------------------------------------------------------

    def apply(self, event: Completion) -> list[FollowUp]:
        finished = self._count_completion(event)
        handler = {
            EventKind.STATUS: self._on_status,
            EventKind.PULL: self._on_pull,
            EventKind.FETCH: self._on_fetch,
            EventKind.SYNC: self._on_sync,
            EventKind.CHANGES: self._on_changes,
            EventKind.COMMIT: self._on_commit,
        }[event.kind]
        return handler(event, finished)

    def _on_status(self, event: Completion, finished: bool) -> list[FollowUp]:
        if event.ok:
            self.statuses[event.index] = event.payload
        else:
            repo = self.repos[event.index]
            self.statuses[event.index] = RepoStatus(repo.name, repo.path, "unknown", error=event.error)
        if finished and self.batch_operation is Operation.REFRESH:
            return self.set_message("Status refreshed", MessageKind.SUCCESS)
        return []

    def _on_pull(self, event: Completion, finished: bool) -> list[FollowUp]:
        return self._report(event, "Pulled", "pulling") + [self._refresh(event.index)]

    def _on_fetch(self, event: Completion, finished: bool) -> list[FollowUp]:
        return self._report(event, "Fetched", "fetching") + [self._refresh(event.index)]

    def _on_sync(self, event: Completion, finished: bool) -> list[FollowUp]:
        followups = self._report(event, "Synced", "syncing")
        workflow = self._workflow(event.index)
        if not event.ok:
            workflow.fail(event.error)
            return followups + [self._refresh(event.index)]
        workflow.advance(SyncState.POST_SYNC_CHECK)
        return followups + [FollowUp(Action.CHECK_CHANGES, event.index)]

    def _on_changes(self, event: Completion, finished: bool) -> list[FollowUp]:
        workflow = self._workflow(event.index)
        if not event.ok:
            log.warning("%s: post-sync status failed: %s", self._name(event.index), event.error)
            workflow.fail(event.error)
        elif event.payload is None:
            workflow.advance(SyncState.NO_CHANGES)
            workflow.finish()
        else:
            workflow.advance(SyncState.AWAITING_DECISION)
            prompt = CommitPrompt(repo_index=event.index, status_text=event.payload)
            if self.prompt is None:
                self.prompt = prompt
            else:
                self.queued_prompts.append(prompt)
            return []
        return [self._refresh(event.index)]

    def _on_commit(self, event: Completion, finished: bool) -> list[FollowUp]:
        name = self._name(event.index)
        workflow = self._workflow(event.index)
        if not event.ok:
            workflow.fail(event.error)
            followups = self.set_message(f"Error committing {name}: {event.error}",
                                         MessageKind.ERROR)
        else:
            workflow.finish()
            outcome = event.payload
            if outcome.mode is CommitMode.NEW_PR_BRANCH:
                text = f"Created branch {outcome.branch} and pushed {name}. Create PR: {PR_HINT}"
            else:
                text = f"Committed and pushed {name}"
            followups = self.set_message(text, MessageKind.SUCCESS)
        return followups + [self._refresh(event.index)]

    # -------------------------------------------------------------------------
    # Commit prompt
    # -------------------------------------------------------------------------

    def choose_mode(self, mode: CommitMode) -> None:
        if self.prompt is not None:
            self.prompt.mode = mode

    def confirm_prompt(self) -> list[FollowUp]:
        """Close the live prompt and ask for the commit to run."""
        if self.prompt is None:
            return []
        prompt = self._next_prompt()
        self._workflow(prompt.repo_index).advance(SyncState.COMMITTING)
        self.set_message(f"Committing {self._name(prompt.repo_index)}...")
        return [FollowUp(Action.COMMIT, prompt.repo_index, mode=prompt.mode)]

    def skip_prompt(self) -> list[FollowUp]:
        if self.prompt is None:
            return []
        prompt = self._next_prompt()
        self._workflow(prompt.repo_index).advance(SyncState.IDLE)
        self.set_message(f"Skipped commit for {self._name(prompt.repo_index)}")
        return [self._refresh(prompt.repo_index)]

    def _next_prompt(self) -> CommitPrompt:
        prompt = self.prompt
        self.prompt = self.queued_prompts.popleft() if self.queued_prompts else None
        return prompt

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _report(self, event: Completion, done: str, verb: str) -> list[FollowUp]:
        name = self._name(event.index)
        if event.ok:
            return self.set_message(f"{done} {name}", MessageKind.SUCCESS)
        return self.set_message(f"Error {verb} {name}: {event.error}", MessageKind.ERROR)

    def _workflow(self, index: int) -> SyncWorkflow:
        if index not in self.workflows:
            self.workflows[index] = SyncWorkflow(index)
        return self.workflows[index]

    def _name(self, index: int) -> str:
        return self.repos[index].name

    @staticmethod
    def _refresh(index: int) -> FollowUp:
        return FollowUp(Action.REFRESH, index)
