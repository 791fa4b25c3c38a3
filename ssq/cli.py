"""Command-line interface for the ssq secret scanner."""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import os
import pathlib
import signal
import sys
import threading
from typing import Iterator, List

from ssq.core import reporter
from ssq.core.config import resolve_config
from ssq.detectors import engine
from ssq.detectors.git_io import GitRepository
from ssq.detectors.result_schema import ScanMode
from ssq.errors import SsqError

SEVERITY_LEVELS = ["low", "medium", "high", "critical"]
EXIT_CLEAN = 0
EXIT_FINDINGS = 1
EXIT_ERROR = 2

_LOG = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ssq", description="Secret Squirrel - find potential secrets in your code")
    parser.add_argument("path", nargs="?", type=pathlib.Path, default=pathlib.Path("."), help="Path to repository (defaults to current directory)")
    parser.add_argument("--config", type=pathlib.Path, default=None, help="Base config file replacing the user and shipped defaults")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--staged", action="store_true", help="Only scan staged index content")
    mode.add_argument("--history", action="store_true", help="Scan git history")
    parser.add_argument("--range", dest="rev_range", default=None, help="Revision range for history scans (implies --history)")
    parser.add_argument("--severity", type=str.lower, choices=SEVERITY_LEVELS, default=None, help="Only report findings of this severity or higher")
    parser.add_argument("--print-config", action="store_true", help="Print the effective configuration and exit")
    parser.add_argument("--format", choices=["text", "json"], default="text", help="Console output format")
    parser.add_argument("--out", type=pathlib.Path, default=None, help="Write the JSON summary to this path")
    parser.add_argument("--sarif", type=pathlib.Path, default=None, help="Write a SARIF report to this path")
    parser.add_argument("--workers", type=int, default=None, help="Number of scanning threads")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging (also via the DEBUG environment variable)")
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.rev_range and args.staged:
        parser.error("--range cannot be combined with --staged")
    _configure_logging(args.debug or bool(os.environ.get("DEBUG")))

    if args.staged:
        mode = ScanMode.STAGED
    elif args.history or args.rev_range:
        mode = ScanMode.HISTORY
    else:
        mode = ScanMode.WORKTREE

    repo = GitRepository(args.path)
    try:
        config = resolve_config(repo.root, base_path=args.config)
        if args.severity:
            config = config.with_severity(args.severity)
        if args.print_config:
            sys.stdout.write(config.dump())
            return EXIT_CLEAN

        cancel = threading.Event()
        with _cancel_on_interrupt(cancel):
            result = engine.scan(
                repo.root,
                config,
                mode,
                rev_range=args.rev_range,
                workers=args.workers,
                cancel=cancel,
                repo=repo,
            )
    except SsqError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    summary = reporter.build_summary(result, git=repo.metadata() if repo.is_repository() else None)
    reporter.write_reports(summary, result.findings, json_path=args.out, sarif_path=args.sarif)
    if args.format == "json":
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        sys.stdout.write(reporter.render_text(result))

    return EXIT_FINDINGS if result.failed else EXIT_CLEAN


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@contextlib.contextmanager
def _cancel_on_interrupt(cancel: threading.Event) -> Iterator[None]:
    """First Ctrl-C requests a cooperative stop; a second one interrupts."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):  # pragma: no cover - signal driven
        if cancel.is_set():
            raise KeyboardInterrupt
        _LOG.warning("Interrupt received; finishing current work (press Ctrl-C again to abort)")
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
