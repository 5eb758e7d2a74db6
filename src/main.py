#!/usr/bin/env python3

# Entry of lish

from __future__ import annotations

import argparse
import os
import sys
from typing import Iterable, Optional

try:
    import readline  # type: ignore
except Exception:  # pragma: no cover - fallback when readline unavailable
    readline = None

READLINE_ACTIVE = bool(readline)

PROMPT = "lish> "

from loguru import logger

from logging_utils import LOG_LEVELS, configure_logging
from ops import STATUS_INTERRUPTED, ShellSession, run_line  # local module in the same folder


def get_prompt() -> str:
    return os.environ.get("LISH_PROMPT", PROMPT)


def setup_readline() -> None:
    if not READLINE_ACTIVE:
        return
    try:
        readline.parse_and_bind("set editing-mode emacs")
        readline.parse_and_bind("Control-l: clear-screen")
    except Exception:
        pass


def interpret(line: str, session: ShellSession) -> bool:
    """Run one line; return True when the session should end."""
    try:
        result = run_line(line, session)
    except KeyboardInterrupt:
        print()
        session.last_status = STATUS_INTERRUPTED
        return False
    except Exception as e:
        logger.opt(exception=True).debug("line.crash")
        print(f"lish: error: {e}", file=sys.stderr)
        session.last_status = 1
        return False
    return result.exit_requested


def run_lines(lines: Iterable[str], session: ShellSession) -> int:
    """Run lines from a script or a redirected stream, without prompting."""
    for lineno, raw in enumerate(lines, start=1):
        line = raw.rstrip("\r\n")
        if lineno == 1 and line.startswith("#!"):
            continue
        if line.strip() == "":
            continue
        if interpret(line, session):
            break
    return session.last_status


def repl(session: Optional[ShellSession] = None) -> int:
    session = session or ShellSession(inherit_env=True)
    setup_readline()
    prompt = get_prompt()

    while True:
        try:
            line = input(prompt)
        except EOFError:
            # Ctrl-D on empty line -> exit
            print()
            break
        except KeyboardInterrupt:
            # Ctrl-C at prompt -> new line and continue
            print()
            continue

        if line.strip() == "":
            continue
        if interpret(line, session):
            break

    # Exit with the last status we saw (0 when nothing ran)
    return session.last_status


def parse_args(args=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="lish - a small line-oriented command interpreter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  lish                       # Interactive prompt
  lish -c 'echo hi | wc'     # Run one line and exit with its status
  lish script.lish           # Run a file line by line

Environment:
  LISH_PROMPT      prompt text (default "lish> ")
  LISH_LOG_LEVEL   log level when --log-level is not given (default WARNING)
"""
    )

    parser.add_argument(
        "script",
        nargs="?",
        help="Run commands from this file instead of the interactive prompt"
    )
    parser.add_argument(
        "--command", "-c",
        metavar="LINE",
        help="Run a single line and exit with its status"
    )
    parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Log level for diagnostics on stderr"
    )

    return parser.parse_args(args)


def main() -> None:
    args = parse_args()
    configure_logging(args.log_level)
    session = ShellSession(inherit_env=True)

    if args.command is not None:
        interpret(args.command, session)
        sys.exit(session.last_status)

    if args.script:
        try:
            with open(args.script, encoding="utf-8", errors="surrogateescape") as f:
                sys.exit(run_lines(f, session))
        except OSError as e:
            print(f"lish: {args.script}: {e.strerror or e}", file=sys.stderr)
            sys.exit(127)

    sys.exit(repl(session))


if __name__ == "__main__":
    main()
