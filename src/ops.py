from __future__ import annotations

import os
import string
import subprocess
import sys
import threading
from contextlib import ExitStack, suppress
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Dict, List, Optional

from loguru import logger

from command import Builtin, CommandContext, Program, resolve_program
from errors import STATUS_NOT_EXECUTABLE, STATUS_NOT_FOUND, ShellError, ShellIOError
from groups import (
    Assignment,
    CommandForm,
    Pipeline,
    RedirectionSpec,
    Token,
    format_line,
    parse_tokens,
    tokenize,
)

# Status of a built-in whose output pipe was closed by the reader (128 + SIGPIPE)
STATUS_PIPE_CLOSED = 141
STATUS_INTERRUPTED = 130

_NAME_START = frozenset(string.ascii_letters + '_')
_NAME_CHARS = _NAME_START | frozenset(string.digits)


class LineState(Enum):
    IDLE = "idle"
    TOKENIZED = "tokenized"
    SUBSTITUTED = "substituted"
    PARSED = "parsed"
    ASSIGNMENT = "assignment"
    DISPATCHING = "dispatching"
    TERMINATED = "terminated"


@dataclass
class ExecutionResult:
    status: int
    error: Optional[str] = None
    exit_requested: bool = False


class ShellSession:
    """Holds session-wide shell context like environment variables."""

    def __init__(
        self,
        inherit_env: bool = True,
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
    ) -> None:
        # String-only environment, also the base for subprocesses
        self.env: Dict[str, str] = dict(os.environ) if inherit_env else {}
        # Binary streams used when a command is not redirected; None means
        # the interpreter's own sys.stdin/stdout/stderr
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr
        self.last_status: int = 0
        self.line_state: LineState = LineState.IDLE
        self.exit_requested: bool = False

    def get_env(self) -> Dict[str, str]:
        return dict(self.env)

    # --- variable helpers ---
    def get_var(self, name: str) -> Optional[str]:
        return self.env.get(name)

    def set_var(self, name: str, value: str) -> None:
        self.env[name] = value

    def unset_var(self, name: str) -> None:
        self.env.pop(name, None)

    # --- streams ---
    def stream(self, name: str) -> BinaryIO:
        explicit = getattr(self, name)
        if explicit is not None:
            return explicit
        std = getattr(sys, name)
        if name != 'stdin':
            std.flush()
        return std.buffer

    def emit(self, name: str, text: str) -> None:
        stream = self.stream(name)
        stream.write(text.encode("utf-8", "surrogateescape"))
        stream.flush()


def _advance(session: ShellSession, state: LineState) -> None:
    session.line_state = state
    logger.debug("line.state {}", state.value)


# ---- Substitution ----

def _expand_vars(text: str, session: ShellSession) -> str:
    """Replace $NAME and ${NAME} in text with values from the session.

    Undefined names expand to the empty string. A '$' that does not start a
    valid name is kept literally, as is an unterminated or invalid ${...}.
    """
    out: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '$' and i + 1 < n:
            nxt = text[i + 1]
            if nxt == '{':
                end = text.find('}', i + 2)
                name = text[i + 2:end] if end >= 0 else ''
                if name and name[0] in _NAME_START and all(c in _NAME_CHARS for c in name):
                    out.append(session.get_var(name) or '')
                    i = end + 1
                    continue
            elif nxt in _NAME_START:
                j = i + 1
                while j < n and text[j] in _NAME_CHARS:
                    j += 1
                out.append(session.get_var(text[i + 1:j]) or '')
                i = j
                continue
        out.append(ch)
        i += 1
    return ''.join(out)


def substitute(token: Token, session: ShellSession) -> str:
    """Effective value of a word token; single-quoted pieces stay verbatim."""
    if token.kind != 'WORD':
        return token.value
    return ''.join(
        text if quoting == 'single' else _expand_vars(text, session)
        for text, quoting in token.segments
    )


def substitute_tokens(tokens: List[Token], session: ShellSession) -> List[Token]:
    return [tok.substituted(substitute(tok, session)) if tok.kind == 'WORD' else tok for tok in tokens]


# ---- Redirections ----

@dataclass
class StreamBindings:
    """Final streams of one command; None means the session's own stream."""
    stdin: Optional[BinaryIO] = None
    stdout: Optional[BinaryIO] = None
    stderr: Optional[BinaryIO] = None

    def __contains__(self, handle: object) -> bool:
        return any(handle is s for s in (self.stdin, self.stdout, self.stderr))


_OPEN_MODES = {'read': 'rb', 'write': 'wb', 'append': 'ab'}


def resolve_redirections(
    specs: List[RedirectionSpec],
    defaults: StreamBindings,
    stack: ExitStack,
    session: ShellSession,
) -> StreamBindings:
    """Open redirection targets in order; the last spec for a stream wins.

    A dup copies the source binding as it stands at that point, falling back
    to the session stream when the source is not redirected. Opened files are
    registered on ``stack`` so they are closed when the caller's pipeline is
    done, whether it succeeded or not.
    """
    bound = StreamBindings(defaults.stdin, defaults.stdout, defaults.stderr)
    for spec in specs:
        if spec.mode == 'dup':
            source = getattr(bound, spec.path)
            if source is None:
                source = session.stream(spec.path)
            setattr(bound, spec.stream, source)
            continue
        if not spec.path:
            raise ShellIOError(spec.path, "ambiguous redirect")
        try:
            handle = open(spec.path, _OPEN_MODES[spec.mode])
        except OSError as e:
            raise ShellIOError.from_os_error(spec.path, e) from e
        stack.enter_context(handle)
        setattr(bound, spec.stream, handle)
    return bound


# ---- Execution ----

class _Stage:
    def __init__(self, form: CommandForm, program: Program) -> None:
        self.form = form
        self.program = program
        self.streams = StreamBindings()
        # Pipe ends only this stage uses; closed once the stage no longer needs them
        self.owned: List[BinaryIO] = []
        self.proc: Optional[subprocess.Popen] = None
        self.thread: Optional[threading.Thread] = None
        self.ctx: Optional[CommandContext] = None
        self.status: Optional[int] = None

    def release(self) -> None:
        for handle in self.owned:
            with suppress(BrokenPipeError):
                handle.close()
        self.owned = []

    def wait(self) -> int:
        if self.proc is not None:
            code = self.proc.wait()
            # Killed by a signal: report 128 + signal number
            self.status = 128 - code if code < 0 else code
        elif self.thread is not None:
            self.thread.join()
        return self.status if self.status is not None else 0


def _popen_stream(binding: Optional[BinaryIO], fallback: Optional[BinaryIO]) -> Optional[BinaryIO]:
    stream = binding if binding is not None else fallback
    if stream is None:
        return None
    try:
        stream.fileno()
    except (AttributeError, OSError, ValueError):
        # Not backed by a descriptor; the child inherits ours instead
        return None
    return stream


def _close_all(handles: Dict[int, BinaryIO]) -> None:
    for handle in handles.values():
        handle.close()


def _flush_std() -> None:
    for std in (sys.stdout, sys.stderr):
        with suppress(ValueError):
            std.flush()


def _run_builtin(stage: _Stage, session: ShellSession) -> None:
    assert isinstance(stage.program, Builtin)
    streams = stage.streams
    ctx = CommandContext(
        stdin=streams.stdin if streams.stdin is not None else session.stream('stdin'),
        stdout=streams.stdout if streams.stdout is not None else session.stream('stdout'),
        stderr=streams.stderr if streams.stderr is not None else session.stream('stderr'),
        session=session,
    )
    stage.ctx = ctx
    logger.debug("stage.builtin name={} args={}", stage.form.name, stage.form.args)
    try:
        stage.status = stage.program.func(stage.form.args, ctx)
        ctx.stdout.flush()
    except BrokenPipeError:
        stage.status = STATUS_PIPE_CLOSED
    except OSError as e:
        session.emit('stderr', f"lish: {stage.form.name}: {e}\n")
        stage.status = 1
    finally:
        stage.release()


def _spawn(stage: _Stage, session: ShellSession) -> None:
    streams = stage.streams
    _flush_std()
    try:
        stage.proc = subprocess.Popen(
            stage.form.argv,
            executable=stage.program.path,
            stdin=_popen_stream(streams.stdin, session.stdin),
            stdout=_popen_stream(streams.stdout, session.stdout),
            stderr=_popen_stream(streams.stderr, session.stderr),
            env=session.get_env(),
        )
        logger.debug("stage.spawn name={} pid={}", stage.form.name, stage.proc.pid)
    except OSError as e:
        session.emit('stderr', f"lish: {stage.form.name}: {e.strerror or e}\n")
        stage.status = STATUS_NOT_FOUND if isinstance(e, FileNotFoundError) else STATUS_NOT_EXECUTABLE
    finally:
        # The child holds its own copies now
        stage.release()


def _run_pipeline(pipeline: Pipeline, session: ShellSession) -> ExecutionResult:
    # Validate the whole pipeline before any stage starts
    stages: List[_Stage] = []
    for form in pipeline.commands:
        program = resolve_program(form.name, session.env)
        logger.debug("stage.resolve name={} program={}", form.name, program)
        stages.append(_Stage(form, program))

    with ExitStack() as stack:
        pipes = []
        loose: Dict[int, BinaryIO] = {}
        stack.callback(_close_all, loose)
        for _ in range(len(stages) - 1):
            r, w = os.pipe()
            pair = (os.fdopen(r, 'rb'), os.fdopen(w, 'wb'))
            for h in pair:
                loose[id(h)] = h
            pipes.append(pair)

        for idx, stage in enumerate(stages):
            defaults = StreamBindings(
                stdin=pipes[idx - 1][0] if idx > 0 else None,
                stdout=pipes[idx][1] if idx < len(pipes) else None,
            )
            stage.streams = resolve_redirections(stage.form.redirections, defaults, stack, session)

        # Pipe ends replaced by explicit redirections are closed now so the
        # other side sees EOF (or a closed reader) instead of hanging
        for idx, stage in enumerate(stages):
            ends = []
            if idx > 0:
                ends.append(pipes[idx - 1][0])
            if idx < len(pipes):
                ends.append(pipes[idx][1])
            for end in ends:
                loose.pop(id(end))
                if end in stage.streams:
                    stage.owned.append(end)
                else:
                    end.close()

        _advance(session, LineState.DISPATCHING)
        for stage in stages:
            if not isinstance(stage.program, Builtin):
                _spawn(stage, session)
            elif len(stages) == 1:
                _run_builtin(stage, session)
            else:
                stage.thread = threading.Thread(target=_run_builtin, args=(stage, session), daemon=True)
                stage.thread.start()

        try:
            statuses = [stage.wait() for stage in stages]
        except KeyboardInterrupt:
            for stage in stages:
                if stage.proc is not None and stage.proc.poll() is None:
                    stage.proc.kill()
                    stage.proc.wait()
            return ExecutionResult(STATUS_INTERRUPTED, "interrupted")

    last = stages[-1]
    exit_requested = len(stages) == 1 and last.ctx is not None and last.ctx.exit_requested
    logger.debug("pipeline.done statuses={}", statuses)
    return ExecutionResult(statuses[-1], exit_requested=exit_requested)


def _assign(assignment: Assignment, session: ShellSession) -> ExecutionResult:
    for name, value in assignment.pairs:
        session.set_var(name, value)
        logger.debug("env.set name={}", name)
        session.emit('stdout', f"Set {name}={value}\n")
    return ExecutionResult(0)


def run_line(line: str, session: ShellSession) -> ExecutionResult:
    """Interpret one input line: tokenize, substitute, parse, then assign or run.

    Interpreter errors are reported on the session stderr and turned into a
    failing ExecutionResult; they never propagate to the caller.
    """
    _advance(session, LineState.IDLE)
    try:
        tokens = tokenize(line)
        _advance(session, LineState.TOKENIZED)
        tokens = substitute_tokens(tokens, session)
        _advance(session, LineState.SUBSTITUTED)
        parsed = parse_tokens(tokens)
        _advance(session, LineState.PARSED)
        logger.debug("line.parsed\n{}", format_line(parsed))
        if parsed is None:
            result = ExecutionResult(0)
        elif isinstance(parsed, Assignment):
            _advance(session, LineState.ASSIGNMENT)
            result = _assign(parsed, session)
        else:
            result = _run_pipeline(parsed, session)
    except ShellError as e:
        logger.debug("line.error kind={} message={}", type(e).__name__, e)
        session.emit('stderr', f"lish: {e}\n")
        result = ExecutionResult(e.status, str(e))
    _advance(session, LineState.TERMINATED)
    session.last_status = result.status
    if result.exit_requested:
        session.exit_requested = True
    return result


def execute_line(line: str, session: ShellSession) -> int:
    return run_line(line, session).status

