import io
import os
from pathlib import Path

import pytest  # type: ignore

import ops
from ops import LineState, ShellSession, execute_line, run_line as run_result


def run_line(line: str, session: ShellSession) -> int:
    return execute_line(line, session)


def test_pwd_and_external_commands(session, tmp_path):
    # tmp_path is current working dir via fixture
    p = Path(".").resolve()
    assert p == tmp_path.resolve()

    assert run_line("mkdir -p a/b", session) == 0
    code = run_line("ls -1 a > listing.txt", session)
    assert code == 0
    listing = (tmp_path / "listing.txt").read_text()
    assert "b" in listing

    # Change current dir in parent process, then 'pwd' should reflect it
    os.chdir(tmp_path / "a")
    code = run_line("pwd > pwd.txt", session)
    assert code == 0
    assert (tmp_path / "a" / "pwd.txt").read_text().strip().endswith("/a")


@pytest.mark.parametrize(
    "content,pattern,expected",
    [
        ("alpha\nBeta\ngamma\n", "^B", "Beta\n"),
        ("foo\nbar\nfoo\n", "foo", "foo\nfoo\n"),
        ("foo\nbar\n", "nomatch", ""),
    ],
)
def test_pipeline_grep(session, tmp_path, content, pattern, expected):
    f = tmp_path / "text.txt"
    f.write_text(content)

    code = run_line(f"cat text.txt | grep -E '{pattern}' > filtered.txt", session)
    assert code == (0 if expected else 1)
    assert (tmp_path / "filtered.txt").read_text() == expected


def test_command_not_found(session, capfd):
    code = run_line("frobnicate123 --flag", session)
    assert code == 127
    assert capfd.readouterr().err == "lish: frobnicate123: command not found\n"
    # next line is still accepted
    assert run_line("true", session) == 0


def test_syntax_error_spawns_nothing(session, tmp_path, capfd):
    code = run_line('echo "abc > out.txt', session)
    assert code == 2
    assert capfd.readouterr().err == "lish: syntax error: unterminated quote\n"
    assert not (tmp_path / "out.txt").exists()
    assert session.line_state is LineState.TERMINATED


def test_last_status_tracks_lines(session):
    run_line("false", session)
    assert session.last_status == 1
    run_line("true", session)
    assert session.last_status == 0
    run_line("nope-not-a-command", session)
    assert session.last_status == 127


def test_error_result_carries_message(session):
    result = run_result("cat < missing.txt", session)
    assert result.status == 1
    assert result.error == "missing.txt: No such file or directory"
    assert not result.exit_requested


def test_blank_and_removed_lines_do_nothing(session, capfd):
    assert run_line("", session) == 0
    assert run_line("   ", session) == 0
    assert run_line("$UNSET_ONE $UNSET_TWO", session) == 0
    out, err = capfd.readouterr()
    assert (out, err) == ("", "")


def test_command_name_from_variable(session, capfd):
    run_line("CMD=echo", session)
    capfd.readouterr()
    run_line("$CMD expanded", session)
    assert capfd.readouterr().out == "expanded\n"


def test_external_exit_status(session):
    assert run_line("sh -c 'exit 7'", session) == 7


def test_not_executable(session, tmp_path, capfd):
    script = tmp_path / "plain.txt"
    script.write_text("echo hi\n")
    script.chmod(0o644)
    code = run_line("./plain.txt", session)
    assert code == 126
    assert "lish: ./plain.txt:" in capfd.readouterr().err


def test_executable_by_path(session, tmp_path):
    script = tmp_path / "hello.sh"
    script.write_text("#!/bin/sh\necho from script \"$1\"\n")
    script.chmod(0o755)
    assert run_line("./hello.sh arg > out.txt", session) == 0
    assert (tmp_path / "out.txt").read_text() == "from script arg\n"


def test_env_is_passed_to_children(session, tmp_path):
    assert run_line("env > env.txt", session) == 0
    lines = (tmp_path / "env.txt").read_text().splitlines()
    assert f"HOME={tmp_path}" in lines
    assert not any(line.startswith("LISH_TEST_SANDBOX=") for line in lines)


class TestLineStates:
    """State machine every line walks through."""

    @pytest.fixture()
    def states(self, monkeypatch):
        seen = []
        real = ops._advance

        def record(session, state):
            seen.append(state)
            real(session, state)

        monkeypatch.setattr(ops, "_advance", record)
        return seen

    def test_command_line(self, session, states):
        run_line("true", session)
        assert states == [
            LineState.IDLE,
            LineState.TOKENIZED,
            LineState.SUBSTITUTED,
            LineState.PARSED,
            LineState.DISPATCHING,
            LineState.TERMINATED,
        ]

    def test_assignment_line(self, session, states):
        run_line("X=1", session)
        assert LineState.ASSIGNMENT in states
        assert LineState.DISPATCHING not in states
        assert states[-1] is LineState.TERMINATED

    def test_syntax_error_line(self, session, states):
        run_line("echo 'oops", session)
        assert states == [LineState.IDLE, LineState.TERMINATED]

    def test_unknown_command_never_dispatches(self, session, states):
        run_line("frobnicate123", session)
        assert LineState.PARSED in states
        assert LineState.DISPATCHING not in states


def test_session_streams(sandbox):
    out, err = io.BytesIO(), io.BytesIO()
    sess = ShellSession(inherit_env=False, stdout=out, stderr=err)
    sess.env["PATH"] = sandbox[1]["PATH"]
    assert run_line("echo to buffer", sess) == 0
    assert run_line("cat nowhere.txt", sess) == 1
    run_line("A=b", sess)
    assert out.getvalue() == b"to buffer\nSet A=b\n"
    assert err.getvalue() == b"cat: nowhere.txt: No such file or directory\n"
