"""Command-line interface for osarunner.

Provides the main entry point for running scripts through a local or
remote pipeline and for starting the HTTP endpoint server.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="osarunner",
        description="Run automation scripts through a persistent worker process",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/osarunner.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run scripts and print their output")
    run_parser.add_argument(
        "files", nargs="*", type=Path,
        help="Script files, each submitted as one script ('-' reads stdin)",
    )
    run_parser.add_argument(
        "-e", "--expr", action="append", default=[],
        help="Script line; repeat to build a multi-line script",
    )
    run_parser.add_argument(
        "--raw", action="store_true",
        help="Send each input as a pre-formatted shell command",
    )
    run_parser.add_argument(
        "--interpreter", type=str, default=None,
        help="Override the interpreter scripts are piped into",
    )
    run_parser.add_argument(
        "--remote", type=str, default=None, metavar="URL",
        help="Submit to a running endpoint instead of a local worker",
    )

    subparsers.add_parser("endpoint", help="Start the HTTP endpoint server")

    return parser.parse_args(argv)


def _collect_scripts(args) -> list[str]:
    scripts = []
    if args.expr:
        scripts.append("\n".join(args.expr))
    for path in args.files:
        if str(path) == "-":
            scripts.append(sys.stdin.read())
        else:
            scripts.append(path.read_text(encoding="utf-8"))
    return scripts


async def _run_scripts(settings, args) -> int:
    """Submit every script in order and print each result."""
    from osarunner.client import HttpScriptClient
    from osarunner.pipeline.base import PipelineError
    from osarunner.pipeline.pipeline import CommandPipeline

    scripts = _collect_scripts(args)
    if not scripts:
        print("Nothing to run: pass -e LINE or a script file", file=sys.stderr)
        return 2

    if args.remote:
        executor = HttpScriptClient(base_url=args.remote, timeout=settings.client.timeout)
    else:
        config = settings.pipeline
        if args.interpreter:
            config = config.model_copy(update={"interpreter": args.interpreter})
        executor = CommandPipeline.from_config(config)

    exit_code = 0
    async with executor:
        for script in scripts:
            try:
                if args.raw:
                    output = await executor.submit_raw(script)
                else:
                    output = await executor.submit(script)
            except PipelineError as e:
                logger.debug("Script failed: %r", e)
                print(f"error ({e.error_code}): {str(e).rstrip()}", file=sys.stderr)
                exit_code = 1
                continue
            sys.stdout.write(output)
            if output and not output.endswith("\n"):
                sys.stdout.write("\n")
    return exit_code


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the osarunner CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from osarunner.config.settings import load_settings
    from osarunner.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "run":
        sys.exit(asyncio.run(_run_scripts(settings, args)))

    elif args.command == "endpoint":
        logger.info("Starting endpoint server")
        from osarunner.endpoint.server import serve
        serve(settings)


if __name__ == "__main__":
    main()
