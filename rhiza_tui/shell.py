import logging
import subprocess
from collections.abc import Callable
from pathlib import Path

log = logging.getLogger(__name__)

# (command, cwd) -> trimmed output; raises CommandError on failure
Runner = Callable[[str, Path], str]


class CommandError(Exception):
    """A command exited non-zero. ``output`` is its trimmed stdout+stderr."""

    def __init__(self, output: str, returncode: int | None = None) -> None:
        self.output = output
        self.returncode = returncode
        super().__init__(output or f"command exited with status {returncode}")


def run_command(command: str, cwd: Path) -> str:
    """Run ``command`` through the shell inside ``cwd`` and return its output.

    stdout and stderr are captured together and decoded as UTF-8, with
    undecodable bytes replaced. There is no timeout; the call
    blocks the calling thread until the process exits.
    """
    log.debug("%s $ %s", cwd, command)
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as e:
        raise CommandError(str(e)) from e
    output = result.stdout.strip()
    if result.returncode != 0:
        raise CommandError(output, result.returncode)
    return output
