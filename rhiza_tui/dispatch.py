import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import partial

from .models import (
    OPERATION_EVENTS,
    Action,
    CommitMode,
    Completion,
    EventKind,
    FollowUp,
    Operation,
    Repository,
)
from .shell import CommandError, Runner, run_command
from .status import probe_status
from .workflow import (
    DEFAULT_BRANCH_PREFIX,
    DEFAULT_SETTLE_DELAY,
    ToolNotFoundError,
    WorkflowStepError,
    check_for_changes,
    commit_changes,
    locate_materialize_tool,
    materialize,
)

log = logging.getLogger(__name__)

Task = Callable[[], Completion]
# Starts a task somewhere it may block. The second argument is what to report
# (with an error filled in) if the task dies instead of returning.
Spawn = Callable[[Task, Completion], None]


@dataclass(frozen=True)
class Batch:
    operation: Operation
    generation: int
    indices: tuple[int, ...]


class RepoTasks:
    """Task bodies. Each returns exactly one Completion and never raises for
    a failing git or tool invocation; the failure travels as ``error``."""

    def __init__(self, repos: list[Repository], run: Runner = run_command,
                 settle_delay: float = DEFAULT_SETTLE_DELAY,
                 branch_prefix: str = DEFAULT_BRANCH_PREFIX,
                 locate_tool: Callable[[], str] = locate_materialize_tool) -> None:
        self.repos = repos
        self.run = run
        self.settle_delay = settle_delay
        self.branch_prefix = branch_prefix
        self.locate_tool = locate_tool

    def refresh(self, index: int, generation: int | None = None) -> Completion:
        status = probe_status(self.repos[index], self.run)
        return Completion(EventKind.STATUS, index, generation, payload=status)

    def pull(self, index: int, generation: int | None = None) -> Completion:
        return self._git(EventKind.PULL, index, generation, "git pull")

    def fetch(self, index: int, generation: int | None = None) -> Completion:
        return self._git(EventKind.FETCH, index, generation, "git fetch")

    def sync(self, index: int, generation: int | None = None) -> Completion:
        repo = self.repos[index]
        try:
            materialize(repo.path, self.run, self.locate_tool)
        except (CommandError, ToolNotFoundError) as e:
            log.warning("%s: sync failed: %s", repo.name, e)
            return Completion(EventKind.SYNC, index, generation, error=str(e))
        return Completion(EventKind.SYNC, index, generation)

    def check_changes(self, index: int) -> Completion:
        repo = self.repos[index]
        try:
            text = check_for_changes(repo.path, self.run, self.settle_delay)
        except CommandError as e:
            return Completion(EventKind.CHANGES, index, error=str(e))
        return Completion(EventKind.CHANGES, index, payload=text)

    def commit(self, index: int, mode: CommitMode) -> Completion:
        repo = self.repos[index]
        try:
            outcome = commit_changes(repo.path, mode, self.run, self.branch_prefix)
        except WorkflowStepError as e:
            log.warning("%s: %s (left in place: %s)", repo.name, e,
                        ", ".join(s.value for s in e.completed) or "nothing")
            return Completion(EventKind.COMMIT, index, error=str(e))
        return Completion(EventKind.COMMIT, index, payload=outcome)

    def _git(self, kind: EventKind, index: int, generation: int | None,
             command: str) -> Completion:
        repo = self.repos[index]
        try:
            self.run(command, repo.path)
        except CommandError as e:
            log.warning("%s: %s failed: %s", repo.name, command, e)
            return Completion(kind, index, generation, error=str(e))
        return Completion(kind, index, generation)


class BulkDispatcher:
    def __init__(self, tasks: RepoTasks, spawn: Spawn) -> None:
        self.tasks = tasks
        self.spawn = spawn
        self._bodies = {
            Operation.REFRESH: tasks.refresh,
            Operation.PULL: tasks.pull,
            Operation.FETCH: tasks.fetch,
            Operation.SYNC: tasks.sync,
        }

    def launch(self, batch: Batch) -> int:
        """Start one task per index in the batch; returns how many started."""
        body = self._bodies[batch.operation]
        kind = OPERATION_EVENTS[batch.operation]
        for index in batch.indices:
            self.spawn(partial(body, index, batch.generation),
                       Completion(kind, index, batch.generation))
        log.debug("launched %s for %d repositories (generation %d)",
                  batch.operation.value, len(batch.indices), batch.generation)
        return len(batch.indices)

    def schedule(self, followups: Iterable[FollowUp]) -> None:
        """Start the tasks asked for by the controller; other actions are ignored."""
        for f in followups:
            if f.action is Action.REFRESH:
                self.spawn(partial(self.tasks.refresh, f.index),
                           Completion(EventKind.STATUS, f.index))
            elif f.action is Action.CHECK_CHANGES:
                self.spawn(partial(self.tasks.check_changes, f.index),
                           Completion(EventKind.CHANGES, f.index))
            elif f.action is Action.COMMIT:
                self.spawn(partial(self.tasks.commit, f.index, f.mode),
                           Completion(EventKind.COMMIT, f.index))
