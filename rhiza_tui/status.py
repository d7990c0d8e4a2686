import logging

from .models import RepoStatus, Repository
from .shell import CommandError, Runner, run_command
from .template import check_template

log = logging.getLogger(__name__)


def parse_ahead_behind(output: str) -> tuple[int, int]:
    """Parse ``git rev-list --left-right --count HEAD...@{upstream}``.

    The left column counts commits only on HEAD (ahead), the right column
    commits only on the upstream (behind). Anything unparseable is (0, 0).
    """
    parts = output.split()
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        return 0, 0
    return int(parts[0]), int(parts[1])


def probe_status(repo: Repository, run: Runner = run_command) -> RepoStatus:
    status = RepoStatus(name=repo.name, path=repo.path, branch="unknown")

    try:
        branch = run("git branch --show-current", repo.path)
    except CommandError as e:
        status.error = str(e)
        return status
    status.branch = branch or "detached"

    try:
        porcelain = run("git status --porcelain", repo.path)
    except CommandError as e:
        status.error = str(e)
        return status
    status.dirty = any(line.strip() for line in porcelain.splitlines())

    # No upstream configured is normal
    try:
        counts = run("git rev-list --left-right --count HEAD...@{upstream}", repo.path)
    except CommandError as e:
        log.debug("%s: no upstream (%s)", repo.name, e)
    else:
        status.ahead, status.behind = parse_ahead_behind(counts)

    status.template = check_template(repo.path, run)
    return status
