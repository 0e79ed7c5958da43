"""Entry point for ``python -m osarunner.worker``."""

from __future__ import annotations

import argparse
import logging
import sys

from osarunner.worker.loop import run_worker


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="osarunner.worker",
        description="Execute newline-framed shell commands read from stdin",
    )
    parser.add_argument(
        "--shell", default="/bin/sh",
        help="Shell used to run each command (default: /bin/sh)",
    )
    parser.add_argument(
        "--timeout", type=float, default=None,
        help="Per-command timeout in seconds (default: none)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log worker activity to stderr",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    # stderr doubles as the error channel; the pipeline skips non-protocol lines
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[worker] %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # newline="" keeps carriage returns in here-document bodies
    sys.stdin.reconfigure(encoding="utf-8", errors="replace", newline="")
    sys.stdout.reconfigure(encoding="utf-8")
    sys.stderr.reconfigure(encoding="utf-8")
    return run_worker(sys.stdin, sys.stdout, sys.stderr, shell=args.shell, timeout=args.timeout)


if __name__ == "__main__":
    sys.exit(main())
