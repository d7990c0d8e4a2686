import logging
import os
import sys
import time
from logging.handlers import MemoryHandler
from dataclasses import replace
from pathlib import Path

from rich.markup import escape
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.coordinate import Coordinate
from textual.logging import TextualHandler
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Header, Label, Static
from textual.worker import Worker, WorkerState

from .config import CONFIG_FILE, ConfigError, Settings, load_repositories, load_settings
from .dispatch import BulkDispatcher, RepoTasks, Task
from .models import (
    Action,
    CommitMode,
    CommitPrompt,
    Completion,
    FollowUp,
    MessageKind,
    Operation,
    RepoStatus,
    Repository,
)
from .state import DashboardState
from .workflow import COMMIT_MESSAGE

log = logging.getLogger(__name__)

PROMPT_STATUS_LINES = 20


def colorize_state(status: RepoStatus) -> Text:
    if status.error:
        return Text(f"error: {status.error}", style="red")
    if status.branch == "loading...":
        return Text("-", style="dim")
    if status.dirty:
        return Text("dirty", style="yellow")
    return Text("clean", style="green")


def colorize_sync(status: RepoStatus) -> Text:
    if status.error or status.branch == "loading...":
        return Text("-", style="dim")
    text = f"↑{status.ahead} ↓{status.behind}"
    if status.ahead and status.behind:
        return Text(text, style="bold red")
    if status.behind:
        return Text(text, style="red")
    if status.ahead:
        return Text(text, style="yellow")
    return Text(text, style="green")


def colorize_template(status: RepoStatus) -> Text:
    label = status.template_label()
    if status.template is None:
        return Text(label, style="dim")
    if status.template.error:
        return Text(f"error: {status.template.error}", style="red")
    if status.template.behind > 0:
        return Text(label, style="red")
    return Text(label, style="green")


class CommitModal(ModalScreen):
    BINDINGS = [
        Binding("1", "choose('current')", "Current branch"),
        Binding("2", "choose('pr')", "New PR branch"),
        Binding("enter", "confirm", "Confirm"),
        Binding("n", "skip", "Skip"),
        Binding("escape", "skip", "Skip"),
    ]

    def __init__(self, prompt: CommitPrompt, repo_name: str) -> None:
        super().__init__()
        self.prompt = prompt
        self.repo_name = repo_name

    def compose(self) -> ComposeResult:
        with Container(id="commit-modal"):
            yield Static(self._content(), id="commit-content")

    def _content(self) -> str:
        lines = ["[bold]Commit Changes?[/bold]\n", f"Repository: [bold]{escape(self.repo_name)}[/bold]\n"]
        status_lines = self.prompt.status_text.splitlines()
        lines.append("[dim]Git status:[/dim]")
        lines.extend(escape(line) for line in status_lines[:PROMPT_STATUS_LINES])
        if len(status_lines) > PROMPT_STATUS_LINES:
            lines.append("[dim]... (truncated)[/dim]")
        lines.append(f"\nCommit message: [green]{COMMIT_MESSAGE}[/green]\n")

        options = [
            (CommitMode.CURRENT_BRANCH, "[1] Commit on current branch"),
            (CommitMode.NEW_PR_BRANCH, "[2] Create PR from new branch"),
        ]
        for mode, label in options:
            label = escape(label)
            if mode is self.prompt.mode:
                lines.append(f"  [reverse bold]{label}[/reverse bold]")
            else:
                lines.append(f"  {label}")
        lines.append("\n[dim]Press 1/2 to select, Enter to confirm, n/Esc to skip[/dim]")
        return "\n".join(lines)

    def update_prompt(self, prompt: CommitPrompt) -> None:
        self.prompt = prompt
        self.query_one("#commit-content", Static).update(self._content())

    def action_choose(self, mode: str) -> None:
        self.app.choose_commit_mode(CommitMode(mode))

    def action_confirm(self) -> None:
        self.app.confirm_commit()

    def action_skip(self) -> None:
        self.app.skip_commit()


class HelpModal(ModalScreen):
    BINDINGS = [
        Binding("escape", "dismiss", "Close"),
        Binding("enter", "dismiss", "Close"),
        Binding("question_mark", "dismiss", "Close"),
    ]

    def compose(self) -> ComposeResult:
        help_text = """[bold cyan]═══ Rhiza Manager Help ═══[/bold cyan]

[bold]Navigation[/bold]
  [yellow]↑/↓ j/k[/yellow]  Move cursor up/down
  [yellow]Space[/yellow]    Select repository
  [yellow]a[/yellow]        Select all
  [yellow]d[/yellow]        Deselect all

[bold]Actions on selected repositories[/bold]
  [yellow]p[/yellow]        Pull
  [yellow]f[/yellow]        Fetch
  [yellow]s[/yellow]        Sync template (rhiza materialize --force)

[bold]After a sync with changes[/bold]
  [yellow]1[/yellow]        Commit on current branch
  [yellow]2[/yellow]        Commit on a new branch for a PR
  [yellow]Enter[/yellow]    Confirm
  [yellow]n/Esc[/yellow]    Skip commit

[bold]Other[/bold]
  [yellow]r[/yellow]        Refresh all
  [yellow]?[/yellow]        Show this help
  [yellow]q[/yellow]        Quit

[dim]Press Esc or Enter to close[/dim]"""

        with Container(id="help-modal"):
            yield Static(help_text, id="help-content")

    def action_dismiss(self) -> None:
        self.app.pop_screen()


class RhizaApp(App):
    ENABLE_COMMAND_PALETTE = False

    CSS = """
    Screen {
        background: $surface;
    }

    #main-container {
        height: 100%;
    }

    #repo-table {
        height: 1fr;
    }

    DataTable > .datatable--cursor {
        background: $accent;
    }

    #status-bar {
        dock: bottom;
        height: 3;
        background: $primary-background;
        padding: 0 1;
    }

    #status-bar Label {
        width: 100%;
    }

    #status-label.success {
        color: $success;
    }

    #status-label.error {
        color: $error;
    }

    #commit-modal, #help-modal {
        align: center middle;
        width: 80%;
        height: auto;
        max-height: 90%;
        background: $surface;
        border: tall $primary;
        padding: 1 2;
    }

    #help-modal {
        width: 60;
    }

    #commit-content, #help-content {
        width: 100%;
        height: auto;
    }
    """

    BINDINGS = [
        Binding("q", "request_quit", "Quit"),
        Binding("question_mark", "show_help", "Help", key_display="?"),
        Binding("space", "toggle_select", "Select", show=False),
        Binding("a", "select_all", "Select All"),
        Binding("d", "select_none", "Deselect All"),
        Binding("r", "refresh", "Refresh"),
        Binding("R", "refresh", "Refresh", show=False),
        Binding("p", "pull", "Pull"),
        Binding("f", "fetch", "Fetch"),
        Binding("s", "sync", "Sync"),
        Binding("j", "nav_down", show=False),
        Binding("k", "nav_up", show=False),
    ]

    def __init__(self, repos: list[Repository], settings: Settings | None = None,
                 config_path: Path | None = None, tasks: RepoTasks | None = None) -> None:
        super().__init__()
        self.settings = settings or Settings()
        self.config_path = config_path
        self.state = DashboardState(repos)
        if tasks is None:
            tasks = RepoTasks(
                repos,
                settle_delay=self.settings.settle_delay,
                branch_prefix=self.settings.branch_prefix,
            )
        self.dispatcher = BulkDispatcher(tasks, self._spawn)
        self._fallbacks: dict[Worker, Completion] = {}
        self._prompt_screen: CommitModal | None = None
        self._last_quit_time = 0.0

    def compose(self) -> ComposeResult:
        yield Header()
        with Vertical(id="main-container"):
            yield DataTable(id="repo-table", cursor_type="row")
            with Horizontal(id="status-bar"):
                yield Label("", id="status-label")
        yield Footer()

    def on_mount(self) -> None:
        self.title = "Rhiza Manager"
        if self.config_path is not None:
            self.sub_title = str(self.config_path)
        table = self.query_one("#repo-table", DataTable)
        table.add_columns("☑", "Name", "Branch", "State", "Sync", "Template")
        for i, status in enumerate(self.state.statuses):
            table.add_row("☐", status.name, status.branch, *self._status_cells(status), key=str(i))
        table.focus()
        self._start(Operation.REFRESH)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def _spawn(self, task: Task, fallback: Completion) -> None:
        worker = self.run_worker(
            task,
            name=f"{fallback.kind.value}-{fallback.index}",
            group="repo-tasks",
            thread=True,
            exit_on_error=False,
        )
        self._fallbacks[worker] = fallback

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        fallback = self._fallbacks.get(event.worker)
        if fallback is None:
            return
        if event.state == WorkerState.SUCCESS:
            completion = event.worker.result
        elif event.state in (WorkerState.ERROR, WorkerState.CANCELLED):
            error = event.worker.error
            log.error("task %s died: %r", event.worker.name, error)
            completion = replace(fallback, error=str(error) if error else "cancelled")
        else:
            return
        del self._fallbacks[event.worker]
        self._follow(self.state.apply(completion))
        self._render()

    def _start(self, operation: Operation) -> None:
        batch = self.state.begin_batch(operation)
        if batch is not None:
            self.dispatcher.launch(batch)
        self._render()

    def _follow(self, followups: list[FollowUp]) -> None:
        self.dispatcher.schedule(followups)
        for f in followups:
            if f.action is Action.CLEAR_MESSAGE:
                self.set_timer(self.settings.message_timeout,
                               lambda serial=f.serial: self._clear_message(serial))

    def _clear_message(self, serial: int) -> None:
        self.state.clear_message(serial)
        self._render_status_bar()

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    @staticmethod
    def _status_cells(status: RepoStatus) -> tuple[Text, Text, Text]:
        return colorize_state(status), colorize_sync(status), colorize_template(status)

    def _render(self) -> None:
        table = self.query_one("#repo-table", DataTable)
        for i, status in enumerate(self.state.statuses):
            selected = "☑" if i in self.state.selected else "☐"
            cells = (selected, status.name, status.branch[:30], *self._status_cells(status))
            for col, value in enumerate(cells):
                table.update_cell_at(Coordinate(i, col), value)
        self._render_status_bar()
        self._render_prompt()

    def _render_status_bar(self) -> None:
        label = self.query_one("#status-label", Label)
        state = self.state
        text = state.message
        if state.loading:
            text = f"{text}  [{state.pending_ops} pending]" if text else f"Loading... [{state.pending_ops} pending]"
        if not text:
            count = len(state.selected)
            text = f"{count} selected | p: pull | f: fetch | s: sync | r: refresh | ?: help"
        label.update(Text(text))
        label.set_class(state.message_kind is MessageKind.SUCCESS, "success")
        label.set_class(state.message_kind is MessageKind.ERROR, "error")

    def _render_prompt(self) -> None:
        prompt = self.state.prompt
        if self._prompt_screen is not None and self._prompt_screen.prompt is not prompt:
            if self.screen is self._prompt_screen:
                self.pop_screen()
            self._prompt_screen = None
        if prompt is None:
            return
        if self._prompt_screen is None:
            self._prompt_screen = CommitModal(prompt, self.state.repos[prompt.repo_index].name)
            self.push_screen(self._prompt_screen)
        else:
            self._prompt_screen.update_prompt(prompt)

    # -------------------------------------------------------------------------
    # Commit prompt
    # -------------------------------------------------------------------------

    def choose_commit_mode(self, mode: CommitMode) -> None:
        self.state.choose_mode(mode)
        self._render_prompt()

    def confirm_commit(self) -> None:
        self._follow(self.state.confirm_prompt())
        self._render()

    def skip_commit(self) -> None:
        self._follow(self.state.skip_prompt())
        self._render()

    # -------------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------------

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        self.state.cursor = event.cursor_row

    def action_nav_down(self) -> None:
        self.query_one("#repo-table", DataTable).action_cursor_down()

    def action_nav_up(self) -> None:
        self.query_one("#repo-table", DataTable).action_cursor_up()

    def action_toggle_select(self) -> None:
        if not self.state.repos:
            return
        self.state.toggle_selected()
        table = self.query_one("#repo-table", DataTable)
        self._render()
        if table.cursor_row < len(self.state.repos) - 1:
            table.move_cursor(row=table.cursor_row + 1)

    def action_select_all(self) -> None:
        self.state.select_all()
        self._render()

    def action_select_none(self) -> None:
        self.state.select_none()
        self._render()

    def action_refresh(self) -> None:
        self._start(Operation.REFRESH)

    def action_pull(self) -> None:
        self._start(Operation.PULL)

    def action_fetch(self) -> None:
        self._start(Operation.FETCH)

    def action_sync(self) -> None:
        self._start(Operation.SYNC)

    def action_show_help(self) -> None:
        if self._prompt_screen is not None:
            return
        self.push_screen(HelpModal())

    def action_request_quit(self) -> None:
        """Handle quit request - require double press to quit."""
        now = time.time()
        if now - self._last_quit_time < 1.5:
            self.exit()
        else:
            self._last_quit_time = now
            self.notify("Press again to quit", severity="warning", timeout=1.5)


def _log_level() -> int:
    return logging.DEBUG if os.environ.get("RHIZA_TUI_DEBUG") else logging.INFO


def make_log_handler(settings: Settings) -> logging.Handler:
    if settings.log_file:
        handler: logging.Handler = logging.FileHandler(settings.log_file)
    else:
        handler = TextualHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    return handler


def start_logging(settings_path: Path = CONFIG_FILE) -> Settings:
    """Load settings and route logging where they say.

    Records emitted while the settings themselves are loading are held
    back and replayed into the configured handler.
    """
    early = MemoryHandler(capacity=1000, flushLevel=logging.CRITICAL + 1)
    logging.basicConfig(level=_log_level(), handlers=[early], force=True)
    settings = load_settings(settings_path)
    try:
        handler = make_log_handler(settings)
    except OSError as e:
        log.warning("cannot open log file %s: %s", settings.log_file, e)
        settings.log_file = None
        handler = make_log_handler(settings)
    early.setTarget(handler)
    # replacing the root handlers closes ``early``, which flushes into ``handler``
    logging.basicConfig(level=_log_level(), handlers=[handler], force=True)
    return settings


def main():
    config_path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("config.json")
    try:
        repos = load_repositories(config_path)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    settings = start_logging()
    app = RhizaApp(repos, settings, config_path.resolve())
    app.run()


if __name__ == "__main__":
    main()
