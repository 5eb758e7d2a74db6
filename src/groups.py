"""Tokenization and grouping utilities for lish.

This module turns one raw input line into Tokens and groups already
substituted Tokens into the structures the executor runs: a Pipeline of
CommandForms, or an Assignment when the line only sets variables.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from errors import ShellSyntaxError

STREAMS = ("stdin", "stdout", "stderr")
_FD_STREAMS = {"0": "stdin", "1": "stdout", "2": "stderr"}

_ASSIGNMENT_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=")
_DUP_RE = re.compile(r"^([12]?)>&([12])$")

_REDIRECT_OPS = {
    "<": ("stdin", "read"),
    "0<": ("stdin", "read"),
    ">": ("stdout", "write"),
    "1>": ("stdout", "write"),
    "2>": ("stderr", "write"),
    ">>": ("stdout", "append"),
    "1>>": ("stdout", "append"),
    "2>>": ("stderr", "append"),
}


# ---- Token model (word vs operator) ----
class Token:
    def __init__(
        self,
        kind: str,
        value: str,
        quoting: str = 'unquoted',
        segments: Optional[List[Tuple[str, str]]] = None,
    ) -> None:
        # kind in { 'WORD', 'OP' }
        # quoting in { 'unquoted', 'single', 'double', 'mixed' }
        self.kind = kind
        self.value = value
        self.quoting = quoting
        if segments is None:
            segments = [(value, quoting)] if kind == 'WORD' else []
        self.segments: List[Tuple[str, str]] = segments
        # Effective value, filled in by substitution
        self.text: Optional[str] = None

    def __repr__(self) -> str:
        return f"Token({self.kind!r}, {self.value!r}, {self.quoting!r})"

    @property
    def effective(self) -> str:
        return self.text if self.text is not None else self.value

    def assignment_name(self) -> Optional[str]:
        """Return NAME when the word lexically starts with an unquoted ``NAME=``."""
        if self.kind != 'WORD' or not self.segments:
            return None
        head, quoting = self.segments[0]
        if quoting != 'unquoted':
            return None
        m = _ASSIGNMENT_RE.match(head)
        return m.group(1) if m else None

    def substituted(self, text: str) -> "Token":
        tok = Token(self.kind, self.value, self.quoting, list(self.segments))
        tok.text = text
        return tok


def _word(segments: List[Tuple[str, str]]) -> Token:
    kinds = {q for _, q in segments}
    quoting = kinds.pop() if len(kinds) == 1 else 'mixed'
    value = ''.join(text for text, _ in segments)
    return Token('WORD', value, quoting, list(segments))


# --- Tokenization ---

def tokenize(line: str) -> List[Token]:
    """Split one input line into word and operator tokens.

    Single quotes keep everything literal, double quotes keep whitespace but
    leave ``$`` active, and a backslash outside single quotes makes the next
    character literal. Escaped characters are recorded as strong ('single')
    segments so substitution skips them.
    """
    tokens: List[Token] = []
    segments: List[Tuple[str, str]] = []
    started = False
    i = 0
    n = len(line)

    def add(text: str, quoting: str) -> None:
        nonlocal started
        started = True
        if segments and segments[-1][1] == quoting:
            segments[-1] = (segments[-1][0] + text, quoting)
        else:
            segments.append((text, quoting))

    def flush() -> None:
        nonlocal started
        if started:
            tokens.append(_word(segments))
            segments.clear()
            started = False

    while i < n:
        ch = line[i]
        if ch == "'":
            end = line.find("'", i + 1)
            if end < 0:
                raise ShellSyntaxError("unterminated quote")
            add(line[i + 1:end], 'single')
            i = end + 1
            continue
        if ch == '"':
            add('', 'double')
            i += 1
            while True:
                if i >= n:
                    raise ShellSyntaxError("unterminated quote")
                c = line[i]
                if c == '"':
                    i += 1
                    break
                if c == '\\' and i + 1 < n and line[i + 1] in '$"\\':
                    add(line[i + 1], 'single')
                    i += 2
                    continue
                add(c, 'double')
                i += 1
            continue
        if ch == '\\':
            if i + 1 < n:
                add(line[i + 1], 'single')
                i += 2
            else:
                add('\\', 'single')
                i += 1
            continue
        if ch.isspace():
            flush()
            i += 1
            continue
        if ch in '<>|':
            fd = ''
            if ch in '<>' and len(segments) == 1 and segments[0][1] == 'unquoted':
                candidate = segments[0][0]
                if (ch == '<' and candidate == '0') or (ch == '>' and candidate in ('1', '2')):
                    fd = candidate
                    segments.clear()
                    started = False
            flush()
            # Lookahead for two-char operators
            nxt = line[i + 1] if i + 1 < n else ''
            if ch == '>' and nxt == '>':
                tokens.append(Token('OP', fd + '>>'))
                i += 2
                continue
            if ch == '>' and nxt == '&' and i + 2 < n and line[i + 2] in '12':
                tokens.append(Token('OP', fd + '>&' + line[i + 2]))
                i += 3
                continue
            tokens.append(Token('OP', fd + ch))
            i += 1
            continue
        add(ch, 'unquoted')
        i += 1

    flush()
    return tokens


# --- Grouping ---

@dataclass
class RedirectionSpec:
    """One redirection of a standard stream.

    For mode 'dup' the path holds the name of the stream being copied.
    """
    stream: str  # 'stdin' | 'stdout' | 'stderr'
    mode: str  # 'read' | 'write' | 'append' | 'dup'
    path: str


@dataclass
class CommandForm:
    """A simple command: program name, arguments and its own redirections."""
    name: str
    args: List[str] = field(default_factory=list)
    redirections: List[RedirectionSpec] = field(default_factory=list)

    @property
    def argv(self) -> List[str]:
        return [self.name, *self.args]


@dataclass
class Pipeline:
    commands: List[CommandForm]


@dataclass
class Assignment:
    """A line made only of NAME=value words."""
    pairs: List[Tuple[str, str]]


ParsedLine = Assignment | Pipeline


def redirection_for(op: str, target: str) -> RedirectionSpec:
    m = _DUP_RE.match(op)
    if m:
        stream = _FD_STREAMS[m.group(1) or '1']
        return RedirectionSpec(stream, 'dup', _FD_STREAMS[m.group(2)])
    try:
        stream, mode = _REDIRECT_OPS[op]
    except KeyError:
        raise ShellSyntaxError(f"unexpected operator '{op}'") from None
    return RedirectionSpec(stream, mode, target)


def _is_removed(tok: Token) -> bool:
    # An unquoted word can only be empty after substituting unset variables
    return tok.quoting == 'unquoted' and tok.effective == ''


def _parse_assignment(tokens: List[Token]) -> Optional[Assignment]:
    pairs: List[Tuple[str, str]] = []
    for tok in tokens:
        name = tok.assignment_name() if tok.kind == 'WORD' else None
        if name is None:
            return None
        pairs.append((name, tok.effective[len(name) + 1:]))
    return Assignment(pairs)


def _parse_form(tokens: List[Token], i: int) -> Tuple[List[Token], List[RedirectionSpec], int]:
    words: List[Token] = []
    redirs: List[RedirectionSpec] = []
    while i < len(tokens):
        tok = tokens[i]
        if tok.kind == 'OP' and tok.value == '|':
            break
        if tok.kind == 'OP':
            if _DUP_RE.match(tok.value):
                redirs.append(redirection_for(tok.value, ''))
                i += 1
                continue
            if i + 1 >= len(tokens) or tokens[i + 1].kind != 'WORD':
                raise ShellSyntaxError(f"missing redirection target after '{tok.value}'")
            redirs.append(redirection_for(tok.value, tokens[i + 1].effective))
            i += 2
            continue
        words.append(tok)
        i += 1
    return words, redirs, i


def parse_tokens(tokens: List[Token]) -> Optional[ParsedLine]:
    """Group tokens into an Assignment or a Pipeline.

    Returns None for a line with nothing to run. Word tokens use their
    substituted text when substitution has run, their lexical value otherwise.
    """
    if not tokens:
        return None
    assignment = _parse_assignment(tokens)
    if assignment is not None:
        return assignment

    commands: List[CommandForm] = []
    i = 0
    while True:
        words, redirs, i = _parse_form(tokens, i)
        at_pipe = i < len(tokens)
        if not words and not redirs and at_pipe:
            raise ShellSyntaxError("missing command before '|'")
        if words and words[0].assignment_name() is not None:
            raise ShellSyntaxError(f"assignment '{words[0].effective}' cannot be combined with a command")
        argv = [w.effective for w in words if not _is_removed(w)]
        if not argv:
            if redirs or at_pipe or commands:
                raise ShellSyntaxError("missing command name")
            # every word expanded to nothing
            return None
        commands.append(CommandForm(argv[0], argv[1:], redirs))
        if not at_pipe:
            break
        i += 1  # skip '|'
        if i >= len(tokens):
            raise ShellSyntaxError("missing command after '|'")
    return Pipeline(commands)


# --- Public helpers ---

def split_line(line: str) -> Optional[ParsedLine]:
    """Tokenize and group a line without substitution."""
    return parse_tokens(tokenize(line))


# --- Formatting (debug / test aid) ---

def format_line(parsed: Optional[ParsedLine]) -> str:
    if parsed is None:
        return "<empty>"
    if isinstance(parsed, Assignment):
        return "\n".join(f"SET  {name}={value}" for name, value in parsed.pairs)
    lines: List[str] = []
    for idx, cmd in enumerate(parsed.commands):
        if idx:
            lines.append("OP   |")
        lines.append("CMD  " + ' '.join(cmd.argv))
        for r in cmd.redirections:
            lines.append(f"     {r.stream} {r.mode} {r.path}")
    return "\n".join(lines)

