"""Deterministic stand-in for toolchain executables in integration tests."""

from __future__ import annotations

import argparse
import signal
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Emit scripted output, then exit, hang, or ignore termination."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--line", action="append", default=[], help="Line printed to stdout.")
    parser.add_argument(
        "--stderr-line",
        action="append",
        default=[],
        help="Line printed to stderr after stdout lines.",
    )
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--delay", type=float, default=0.0, help="Pause between lines.")
    parser.add_argument("--hang", action="store_true", help="Never exit on its own.")
    parser.add_argument("--ignore-term", action="store_true", help="Ignore SIGTERM.")
    parser.add_argument(
        "--no-trailing-newline",
        action="store_true",
        help="Leave the last stdout line unterminated.",
    )
    args = parser.parse_args(argv)

    # Real toolchains are run with -utf8output; match that regardless of locale.
    sys.stdout.reconfigure(encoding="utf-8")  # type: ignore[union-attr]
    sys.stderr.reconfigure(encoding="utf-8")  # type: ignore[union-attr]

    if args.ignore_term and hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    for index, line in enumerate(args.line):
        last = index == len(args.line) - 1
        end = "" if last and args.no_trailing_newline else "\n"
        sys.stdout.write(line + end)
        sys.stdout.flush()
        if args.delay:
            time.sleep(args.delay)

    for line in args.stderr_line:
        sys.stderr.write(line + "\n")
        sys.stderr.flush()
        if args.delay:
            time.sleep(args.delay)

    while args.hang:
        time.sleep(0.1)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
