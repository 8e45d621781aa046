from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from tqdm import tqdm

from tools.copy_confirmer_core import (
    AllPresent,
    ConfirmerError,
    CopyConfirmer,
    CopyConfirmerConfig,
    PhaseProgress,
)
from tools.copy_confirmer_report import build_report, format_text, write_report

logger = logging.getLogger("copy_confirmer")

VERSION = "0.1.0"


class _TqdmProgress:
    """Renders one progress bar per comparison phase on stderr."""

    def __init__(self) -> None:
        self._bars: Dict[str, tqdm] = {}

    def __call__(self, update: PhaseProgress) -> None:
        bar = self._bars.get(update.label)
        if bar is None:
            bar = tqdm(total=update.total, desc=update.label, unit="file", file=sys.stderr, leave=True)
            self._bars[update.label] = bar
        bar.update(update.completed - bar.n)
        if update.finished:
            bar.close()
            self._bars.pop(update.label, None)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="copcon",
        description="Confirm every file in a source directory exists in at least one destination.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-s", "--source", help="Source directory")
    parser.add_argument(
        "-d", "--destination", dest="destinations", action="append", default=[], help="Destination directory (repeatable)"
    )
    parser.add_argument("-j", "--jobs", type=int, default=1, help="Number of files hashed in parallel")
    parser.add_argument(
        "-e", "--exclude", dest="excludes", action="append", default=[], help="Path relative to the source to skip (repeatable)"
    )
    parser.add_argument(
        "--exclude-pattern", dest="exclude_patterns", action="append", default=[], help="Skip source paths containing this text"
    )
    parser.add_argument("-f", "--print-found", action="store_true", help="Include the found files mapping in the output")
    parser.add_argument("-o", "--out-file", type=Path, default=None, help="Write the report to this file (.json or .xlsx)")
    parser.add_argument("--out", choices=["JSON", "TEXT"], default="TEXT", help="Output format on stdout")
    parser.add_argument("--no-progress-bar", action="store_true", help="Disable the progress bar")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--gui", action="store_true", help="Open the desktop panel")
    return parser


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _validate_dirs(paths: Sequence[str], kind: str) -> List[Path]:
    resolved = []
    for raw in paths:
        path = Path(raw).expanduser()
        if not path.is_dir():
            raise SystemExit(f"{kind} directory does not exist: {path}")
        resolved.append(path)
    if not resolved:
        raise SystemExit(f"Provide at least one {kind.lower()} directory")
    return resolved


def _gui_argv(args: argparse.Namespace) -> List[str]:
    argv: List[str] = []
    if args.source:
        argv.append(args.source)
    for dest in args.destinations:
        argv.extend(["--destination", dest])
    for rel in args.excludes:
        argv.extend(["--exclude", rel])
    for text in args.exclude_patterns:
        argv.extend(["--exclude-pattern", text])
    return argv


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.gui:
        from plugins.base import run_plugin_standalone
        from tools.copy_confirmer_tool import PLUGIN

        run_plugin_standalone(PLUGIN, _gui_argv(args))
        return 0

    source = _validate_dirs([args.source] if args.source else [], "Source")[0]
    destinations = _validate_dirs(args.destinations, "Destination")

    config = CopyConfirmerConfig(
        source=source,
        destinations=destinations,
        jobs=max(1, args.jobs),
        excludes=args.excludes,
        exclude_patterns=args.exclude_patterns,
    )
    with CopyConfirmer.from_config(config) as engine:
        if not args.no_progress_bar:
            engine.enable_progress_reporting(_TqdmProgress())
        try:
            outcome = engine.compare(config.source, config.destinations)
        except ConfirmerError as exc:
            logger.error("%s", exc)
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        excluded = engine.excluded_paths()

    report = build_report(outcome, excluded, include_found=args.print_found)
    if args.out_file:
        try:
            write_report(args.out_file, report)
        except OSError as exc:
            print(f"Cannot write {args.out_file}: {exc}", file=sys.stderr)
            return 1

    if args.out == "JSON":
        json.dump(report, sys.stdout, ensure_ascii=False, indent=2)
        sys.stdout.write("\n")
    else:
        sys.stdout.write(format_text(report, show_found=args.print_found and not args.out_file))

    return 0 if isinstance(outcome, AllPresent) else 2


if __name__ == "__main__":
    sys.exit(main())
