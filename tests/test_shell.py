"""Tests for the command executor."""

import pytest

from rhiza_tui.shell import CommandError, run_command


def test_returns_trimmed_output(tmp_path):
    assert run_command("echo '  hello  '", tmp_path) == "hello"


def test_runs_inside_working_directory(tmp_path):
    (tmp_path / "marker.txt").write_text("x")
    assert run_command("ls", tmp_path) == "marker.txt"


def test_nonzero_exit_carries_combined_output(tmp_path):
    with pytest.raises(CommandError) as exc_info:
        run_command("echo to-stdout; echo to-stderr 1>&2; exit 3", tmp_path)
    err = exc_info.value
    assert err.returncode == 3
    assert err.output == "to-stdout\nto-stderr"
    assert str(err) == "to-stdout\nto-stderr"


def test_silent_failure_still_has_a_message(tmp_path):
    with pytest.raises(CommandError) as exc_info:
        run_command("exit 1", tmp_path)
    assert str(exc_info.value) == "command exited with status 1"


def test_missing_working_directory_is_a_command_error(tmp_path):
    with pytest.raises(CommandError):
        run_command("true", tmp_path / "does-not-exist")


def test_undecodable_output_is_replaced(tmp_path):
    assert run_command("printf 'ok\\377'", tmp_path) == "ok�"


def test_undecodable_failure_output_is_still_a_command_error(tmp_path):
    with pytest.raises(CommandError) as exc_info:
        run_command("printf 'caf\\351'; exit 2", tmp_path)
    assert exc_info.value.output == "caf�"
