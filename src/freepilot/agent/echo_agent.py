"""Local stand-in agent for supervisor and pipeline integration tests."""

from __future__ import annotations

import argparse
import signal
import sys
import time

_COLOR_START = "\x1b[32m"
_COLOR_END = "\x1b[0m"


def main(argv: list[str] | None = None) -> int:
    """Print scripted output, optionally linger, and exit with a chosen code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--line", action="append", default=[])
    parser.add_argument("--stderr-line", action="append", default=[])
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--ansi", action="store_true")
    parser.add_argument("--ignore-sigterm", action="store_true")
    parser.add_argument("-t", "--prompt", required=False)
    args, _ = parser.parse_known_args(argv)

    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    for line in args.line:
        text = f"{_COLOR_START}{line}{_COLOR_END}" if args.ansi else line
        print(text, flush=True)
    for line in args.stderr_line:
        print(line, file=sys.stderr, flush=True)

    deadline = time.monotonic() + args.sleep
    while time.monotonic() < deadline:
        time.sleep(0.05)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
