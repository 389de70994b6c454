"""Command line front ends for single-file and batch conversion."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from . import __version__
from .batch import DEFAULT_CONCURRENCY, BatchSummary, OutputPolicy, run_batch, run_batch_sequential
from .errors import ConversionError
from .manifest import serialize_manifest
from .pipeline import transform_manifest
from .sandbox import DEFAULT_TIME_BUDGET_MS


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )


def read_routine(script_path: Path) -> str:
    try:
        return script_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConversionError(f"cannot read routine: {exc}", context=f"load routine {script_path}") from exc


def _common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-s", "--script", required=True, help="Routine file declaring main(config, profile_name)")
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=DEFAULT_TIME_BUDGET_MS,
        help="Wall-clock budget for one routine run (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")


def parse_convert_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="subconvert",
        description="Rewrite a Clash subscription file with a user routine",
    )
    parser.add_argument("-i", "--input", required=True, help="Subscription file (YAML)")
    parser.add_argument("-o", "--output", help="Output file (default: overwrite the input)")
    parser.add_argument("-n", "--name", default="", help="Profile name passed to the routine (default: input base name)")
    _common_args(parser)
    return parser.parse_args(argv)


def parse_batch_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="subconvert-batch",
        description="Rewrite many Clash subscription files with one routine",
    )
    parser.add_argument("-i", "--input", required=True, help='Glob pattern, e.g. "configs/*.yaml"')
    parser.add_argument("-o", "--output-dir", help="Output directory (default: ./output)")
    parser.add_argument("--overwrite", action="store_true", help="Overwrite the source files in place")
    parser.add_argument(
        "-c",
        "--concurrency",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help="Files converted at the same time (default: %(default)s)",
    )
    parser.add_argument("--sequential", action="store_true", help="Convert one file at a time")
    _common_args(parser)
    return parser.parse_args(argv)


def run_convert(args: argparse.Namespace) -> int:
    input_path = Path(args.input).resolve()
    script_path = Path(args.script).resolve()
    output_path = Path(args.output).resolve() if args.output else input_path
    profile_name = args.name or input_path.stem

    logging.info("Processing config file: %s", input_path)
    logging.info("Using routine: %s", script_path)
    try:
        routine_source = read_routine(script_path)
        try:
            text = input_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConversionError(f"cannot read input: {exc}") from exc
        manifest = transform_manifest(
            text, routine_source, profile_name, str(input_path), args.timeout_ms, script_path.name
        )
        try:
            output_path.write_text(serialize_manifest(manifest), encoding="utf-8")
        except OSError as exc:
            raise ConversionError(f"cannot write {output_path}: {exc}") from exc
    except ConversionError as exc:
        exc.with_context("convert file", str(input_path))
        logging.error("%s", exc)
        return 1

    logging.info("Config written to %s", output_path)
    return 0


def report(summary: BatchSummary) -> None:
    print("\nDone:")
    print(f"- succeeded: {summary.succeeded} file(s)")
    print(f"- failed: {summary.failed} file(s)")
    if summary.failed:
        print("\nFailed files:")
        for result in summary.results:
            if not result.success:
                print(f"- {result.input}: {result.error}")


def run_batch_cli(args: argparse.Namespace) -> int:
    output_dir = Path(args.output_dir) if args.output_dir else Path.cwd() / "output"
    policy = OutputPolicy(overwrite=args.overwrite, output_dir=None if args.overwrite else output_dir)
    script_path = Path(args.script).resolve()

    logging.info("Input pattern: %s", args.input)
    logging.info("Routine: %s", script_path)
    logging.info("%s", "Overwriting source files" if args.overwrite else f"Writing to: {output_dir}")
    try:
        routine_source = read_routine(script_path)
    except ConversionError as exc:
        logging.error("%s", exc)
        return 1

    if args.sequential:
        summary = run_batch_sequential(args.input, routine_source, policy, args.timeout_ms, script_path.name)
    else:
        summary = asyncio.run(
            run_batch(args.input, routine_source, policy, args.concurrency, args.timeout_ms, script_path.name)
        )
    report(summary)
    return 0 if summary.ok else 1


def main(argv: list[str] | None = None) -> None:
    """Single-file entry point."""
    args = parse_convert_args(argv)
    setup_logging(args.verbose)
    raise SystemExit(run_convert(args))


def batch_main(argv: list[str] | None = None) -> None:
    """Batch entry point."""
    args = parse_batch_args(argv)
    setup_logging(args.verbose)
    raise SystemExit(run_batch_cli(args))


if __name__ == "__main__":
    main(sys.argv[1:])
