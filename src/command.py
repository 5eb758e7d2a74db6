# module for command resolution and the built-in commands

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Dict, List, Tuple

from errors import CommandNotFound

CHUNK_SIZE = 64 * 1024

HELP_TEXT = """\
Built-in commands:
  echo [-n] [args...]   Print arguments to stdout
  cat [files...]        Copy files (or stdin) to stdout
  wc [files...]         Count lines, words and bytes in files or stdin
  pwd                   Print the current working directory
  help                  Show this help message
  exit [code]           Exit the shell

Shell features:
  NAME=VALUE            Set a variable (visible to later lines and commands)
  $VAR or ${VAR}        Variable substitution (not inside '...')
  cmd < file            Redirect stdin from file
  cmd > file            Redirect stdout to file (overwrite)
  cmd >> file           Redirect stdout to file (append)
  cmd 2> file           Redirect stderr to file (2>> appends)
  cmd 2>&1              Send stderr wherever stdout goes
  cmd1 | cmd2           Pipe stdout of cmd1 into stdin of cmd2
  [command]             Any other name is looked up on PATH
"""


@dataclass
class CommandContext:
    """Streams and session a built-in runs against."""
    stdin: BinaryIO
    stdout: BinaryIO
    stderr: BinaryIO
    session: Any
    exit_requested: bool = False

    def write(self, text: str) -> None:
        self.stdout.write(text.encode("utf-8", "surrogateescape"))

    def error(self, text: str) -> None:
        self.stderr.write(text.encode("utf-8", "surrogateescape"))
        self.stderr.flush()


BuiltinFunc = Callable[[List[str], CommandContext], int]

builtin_commands: Dict[str, BuiltinFunc] = {}


def builtin(name: str) -> Callable[[BuiltinFunc], BuiltinFunc]:
    def register(func: BuiltinFunc) -> BuiltinFunc:
        builtin_commands[name] = func
        return func
    return register


# ---- Resolution: closed variant Builtin | External ----

@dataclass(frozen=True)
class Builtin:
    name: str
    func: BuiltinFunc


@dataclass(frozen=True)
class External:
    path: str


Program = Builtin | External


def resolve_program(name: str, env: Dict[str, str]) -> Program:
    """Resolve a command name to a built-in or an executable.

    Built-ins win over PATH. A name containing '/' is taken as a path and only
    has to exist; permission problems surface when the process is spawned.
    """
    func = builtin_commands.get(name)
    if func is not None:
        return Builtin(name, func)
    if '/' in name:
        if os.path.isfile(name):
            return External(name)
        raise CommandNotFound(name)
    found = shutil.which(name, path=env.get('PATH', os.defpath))
    if not found:
        raise CommandNotFound(name)
    return External(found)


# ---- Built-ins ----

def _copy(src: BinaryIO, dst: BinaryIO) -> None:
    read = getattr(src, 'read1', src.read)
    while True:
        chunk = read(CHUNK_SIZE)
        if not chunk:
            break
        dst.write(chunk)
        dst.flush()


@builtin("echo")
def _echo(args: List[str], ctx: CommandContext) -> int:
    newline = True
    if args and args[0] == '-n':
        newline = False
        args = args[1:]
    ctx.write(' '.join(args) + ("\n" if newline else ""))
    return 0


@builtin("cat")
def _cat(args: List[str], ctx: CommandContext) -> int:
    rc = 0
    for path in args or ['-']:
        if path == '-':
            _copy(ctx.stdin, ctx.stdout)
            continue
        try:
            with open(path, 'rb') as f:
                _copy(f, ctx.stdout)
        except OSError as e:
            ctx.error(f"cat: {path}: {e.strerror or e}\n")
            rc = 1
    return rc


def count_bytes(data: bytes) -> Tuple[int, int, int]:
    """Line, word and byte counts the way classic wc reports them."""
    return data.count(b"\n"), len(data.split()), len(data)


def _wc_row(counts: Tuple[int, int, int], label: str = "") -> str:
    lines, words, nbytes = counts
    row = f"{lines:8} {words:8} {nbytes:8}"
    return f"{row} {label}\n" if label else row + "\n"


@builtin("wc")
def _wc(args: List[str], ctx: CommandContext) -> int:
    if not args:
        ctx.write(_wc_row(count_bytes(ctx.stdin.read())))
        return 0
    rc = 0
    totals = [0, 0, 0]
    counted = 0
    for path in args:
        try:
            with open(path, 'rb') as f:
                counts = count_bytes(f.read())
        except OSError as e:
            ctx.error(f"wc: {path}: {e.strerror or e}\n")
            rc = 1
            continue
        ctx.write(_wc_row(counts, path))
        for idx, value in enumerate(counts):
            totals[idx] += value
        counted += 1
    if counted > 1:
        ctx.write(_wc_row((totals[0], totals[1], totals[2]), "total"))
    return rc


@builtin("pwd")
def _pwd(args: List[str], ctx: CommandContext) -> int:
    ctx.write(os.getcwd() + "\n")
    return 0


@builtin("help")
def _help(args: List[str], ctx: CommandContext) -> int:
    ctx.write(HELP_TEXT)
    return 0


@builtin("exit")
def _exit(args: List[str], ctx: CommandContext) -> int:
    if len(args) > 1:
        ctx.error("exit: too many arguments\n")
        return 1
    if not args:
        code = ctx.session.last_status
    else:
        try:
            code = int(args[0])
        except ValueError:
            ctx.error(f"exit: {args[0]}: numeric argument required\n")
            return 2
    ctx.exit_requested = True
    return code & 0xFF
