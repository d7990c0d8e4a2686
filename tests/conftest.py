import shutil
from pathlib import Path

import pytest

from rhiza_tui.models import Repository
from rhiza_tui.shell import CommandError, run_command


class FakeRunner:
    """Scripted stand-in for run_command.

    ``responses`` maps an exact command line to its output, or to an
    exception to raise. Unknown commands return ``default``.
    """

    def __init__(self, responses=None, default=""):
        self.responses = dict(responses or {})
        self.default = default
        self.calls = []

    def __call__(self, command, cwd):
        self.calls.append(command)
        result = self.responses.get(command, self.default)
        if isinstance(result, Exception):
            raise result
        return result


def fail(output, returncode=1):
    return CommandError(output, returncode)


@pytest.fixture
def repo(tmp_path):
    return Repository(name="demo", path=tmp_path)


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def git_env(tmp_path, monkeypatch):
    """Isolate git from the user's configuration and give it an identity."""
    gitconfig = tmp_path / "gitconfig"
    gitconfig.write_text("")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Rhiza Test")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "rhiza@example.com")


def git_init(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    run_command("git init -q", path)
    run_command("git symbolic-ref HEAD refs/heads/main", path)
    return path


def git_commit(path: Path, message: str) -> None:
    run_command(f"git commit -q --allow-empty -m '{message}'", path)
