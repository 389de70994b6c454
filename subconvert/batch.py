"""Apply one routine to many local manifest files."""

from __future__ import annotations

import asyncio
import glob
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConversionError
from .manifest import serialize_manifest
from .pipeline import transform_manifest
from .sandbox import DEFAULT_TIME_BUDGET_MS

DEFAULT_CONCURRENCY = 4
CONVERTED_SUFFIX = ".converted.yaml"


@dataclass(frozen=True, slots=True)
class OutputPolicy:
    """Where converted files go: over the source, into a directory, or alongside."""

    overwrite: bool = False
    output_dir: Path | None = None
    suffix: str = CONVERTED_SUFFIX

    def output_path(self, input_path: Path) -> Path:
        if self.overwrite:
            return input_path
        if self.output_dir is not None:
            return self.output_dir / input_path.name
        return input_path.with_name(input_path.name + self.suffix)


@dataclass(slots=True)
class BatchItemResult:
    input: Path
    success: bool
    output: Path | None = None
    error: str | None = None


@dataclass(slots=True)
class BatchSummary:
    results: list[BatchItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    @property
    def ok(self) -> bool:
        return self.failed == 0


def discover_inputs(pattern: str) -> list[Path]:
    """Expand a glob pattern into unique files, first occurrence wins."""
    seen: set[Path] = set()
    files: list[Path] = []
    for match in sorted(glob.glob(pattern, recursive=True)):
        path = Path(match)
        if not path.is_file():
            continue
        resolved = path.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        files.append(path)
    return files


def convert_file(
    path: Path,
    routine_source: str,
    policy: OutputPolicy,
    time_budget_ms: int = DEFAULT_TIME_BUDGET_MS,
    routine_name: str = "<routine>",
) -> BatchItemResult:
    """Convert one local file; failures are recorded, never raised."""
    logging.info("Processing file: %s", path)
    try:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConversionError(f"cannot read input: {exc}") from exc
        manifest = transform_manifest(text, routine_source, path.stem, str(path), time_budget_ms, routine_name)
        output_path = policy.output_path(path)
        try:
            output_path.write_text(serialize_manifest(manifest), encoding="utf-8")
        except OSError as exc:
            raise ConversionError(f"cannot write {output_path}: {exc}") from exc
    except ConversionError as exc:
        exc.with_context("convert file", str(path))
        logging.error("Failed to process %s: %s", path, exc.message)
        return BatchItemResult(input=path, success=False, error=str(exc))

    logging.info("Converted and saved to: %s", output_path)
    return BatchItemResult(input=path, success=True, output=output_path)


def warn_shared_outputs(files: list[Path], policy: OutputPolicy) -> list[Path]:
    """Log every output path more than one input writes to; last writer wins."""
    writers: dict[Path, list[Path]] = {}
    for path in files:
        writers.setdefault(policy.output_path(path), []).append(path)
    shared = [out for out, sources in writers.items() if len(sources) > 1]
    for out in shared:
        logging.warning(
            "Output %s is written by %s inputs: %s",
            out,
            len(writers[out]),
            ", ".join(str(p) for p in writers[out]),
        )
    return shared


def _prepare(pattern: str, policy: OutputPolicy) -> list[Path]:
    files = discover_inputs(pattern)
    if not files:
        logging.warning("No files match %s", pattern)
        return files
    if not policy.overwrite and policy.output_dir is not None:
        policy.output_dir.mkdir(parents=True, exist_ok=True)
    warn_shared_outputs(files, policy)
    logging.info("Matched %s file(s) for %s", len(files), pattern)
    return files


def run_batch_sequential(
    pattern: str,
    routine_source: str,
    policy: OutputPolicy,
    time_budget_ms: int = DEFAULT_TIME_BUDGET_MS,
    routine_name: str = "<routine>",
) -> BatchSummary:
    """Convert matching files one at a time."""
    summary = BatchSummary()
    for path in _prepare(pattern, policy):
        summary.results.append(convert_file(path, routine_source, policy, time_budget_ms, routine_name))
    return summary


async def run_batch(
    pattern: str,
    routine_source: str,
    policy: OutputPolicy,
    concurrency: int = DEFAULT_CONCURRENCY,
    time_budget_ms: int = DEFAULT_TIME_BUDGET_MS,
    routine_name: str = "<routine>",
) -> BatchSummary:
    """Convert matching files with at most `concurrency` in flight at once."""
    files = _prepare(pattern, policy)
    sem = asyncio.Semaphore(max(1, concurrency))

    async def worker(path: Path) -> BatchItemResult:
        async with sem:
            return await asyncio.to_thread(
                convert_file, path, routine_source, policy, time_budget_ms, routine_name
            )

    results = await asyncio.gather(*(worker(path) for path in files))
    summary = BatchSummary(results=list(results))
    logging.info("Batch complete: ok=%s failed=%s", summary.succeeded, summary.failed)
    return summary
