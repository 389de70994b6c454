from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

import pytest
import yaml

from subconvert import batch
from subconvert.batch import (
    BatchItemResult,
    OutputPolicy,
    discover_inputs,
    run_batch,
    run_batch_sequential,
    warn_shared_outputs,
)

from conftest import PREPEND_RULE_ROUTINE, SAMPLE_MANIFEST


@pytest.fixture
def inputs(tmp_path) -> Path:
    src = tmp_path / "subs"
    src.mkdir()
    for name in ("a", "b", "c", "d"):
        (src / f"{name}.yaml").write_text(SAMPLE_MANIFEST, encoding="utf-8")
    (src / "broken.yaml").write_text("proxies: [unclosed\n", encoding="utf-8")
    return src


@pytest.mark.unit
def test_output_policy_paths(tmp_path) -> None:
    source = tmp_path / "sub.yaml"
    assert OutputPolicy(overwrite=True, output_dir=tmp_path / "out").output_path(source) == source
    assert OutputPolicy(output_dir=tmp_path / "out").output_path(source) == tmp_path / "out" / "sub.yaml"
    assert OutputPolicy().output_path(source) == tmp_path / "sub.yaml.converted.yaml"


@pytest.mark.unit
def test_discover_collapses_duplicate_matches(tmp_path) -> None:
    (tmp_path / "a.yaml").write_text("{}", encoding="utf-8")
    (tmp_path / "link.yaml").symlink_to(tmp_path / "a.yaml")
    (tmp_path / "nested").mkdir()

    files = discover_inputs(str(tmp_path / "*"))

    assert files == [tmp_path / "a.yaml"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_one_bad_file_does_not_abort_the_batch(inputs, tmp_path) -> None:
    out = tmp_path / "out"
    summary = await run_batch(
        str(inputs / "*.yaml"), PREPEND_RULE_ROUTINE, OutputPolicy(output_dir=out), concurrency=2
    )

    assert summary.succeeded == 4
    assert summary.failed == 1
    assert not summary.ok
    failed = [r for r in summary.results if not r.success]
    assert failed[0].input.name == "broken.yaml"
    assert "broken.yaml" in failed[0].error
    assert sorted(p.name for p in out.iterdir()) == ["a.yaml", "b.yaml", "c.yaml", "d.yaml"]
    converted = yaml.safe_load((out / "a.yaml").read_text(encoding="utf-8"))
    assert converted["rules"][0] == "DOMAIN-SUFFIX,example.com,DIRECT"


@pytest.mark.integration
def test_sequential_mode_records_failures_and_continues(inputs) -> None:
    summary = run_batch_sequential(str(inputs / "*.yaml"), PREPEND_RULE_ROUTINE, OutputPolicy())

    assert [r.input.name for r in summary.results] == ["a.yaml", "b.yaml", "broken.yaml", "c.yaml", "d.yaml"]
    assert summary.succeeded == 4
    assert (inputs / "a.yaml.converted.yaml").exists()
    assert not (inputs / "broken.yaml.converted.yaml").exists()


@pytest.mark.integration
def test_overwrite_rewrites_sources(inputs) -> None:
    (inputs / "broken.yaml").unlink()
    summary = run_batch_sequential(str(inputs / "a.yaml"), PREPEND_RULE_ROUTINE, OutputPolicy(overwrite=True))

    assert summary.ok
    assert summary.results[0].output == inputs / "a.yaml"
    assert "example.com" in (inputs / "a.yaml").read_text(encoding="utf-8")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_no_matches_returns_empty_summary(tmp_path) -> None:
    summary = await run_batch(str(tmp_path / "*.yaml"), PREPEND_RULE_ROUTINE, OutputPolicy())
    assert summary.results == []
    assert summary.ok


@pytest.mark.unit
@pytest.mark.asyncio
async def test_in_flight_work_is_bounded(inputs, monkeypatch) -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def fake_convert(path, routine_source, policy, time_budget_ms, routine_name):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        # Uneven durations: a semaphore refills as soon as any slot frees up.
        time.sleep(0.05 if path.name == "a.yaml" else 0.15)
        with lock:
            active -= 1
        return BatchItemResult(input=path, success=True, output=path)

    monkeypatch.setattr(batch, "convert_file", fake_convert)
    summary = await run_batch(str(inputs / "*.yaml"), "def main(c, p): return c", OutputPolicy(), concurrency=2)

    assert len(summary.results) == 5
    assert peak == 2
    assert [r.input.name for r in summary.results] == sorted(p.name for p in inputs.iterdir())


UNWRITABLE_FOR_BAD = """\
from collections import OrderedDict

def main(config, profile_name):
    if profile_name == "bad":
        config["extra"] = OrderedDict(a=1)
    return config
"""


@pytest.fixture
def mixed_inputs(tmp_path) -> Path:
    src = tmp_path / "mixed"
    src.mkdir()
    for name in ("good1", "bad", "good2"):
        (src / f"{name}.yaml").write_text(SAMPLE_MANIFEST, encoding="utf-8")
    return src


@pytest.mark.integration
def test_unwritable_result_is_isolated_in_sequential_mode(mixed_inputs) -> None:
    summary = run_batch_sequential(str(mixed_inputs / "*.yaml"), UNWRITABLE_FOR_BAD, OutputPolicy())

    assert summary.succeeded == 2
    assert summary.failed == 1
    failed = next(r for r in summary.results if not r.success)
    assert failed.input.name == "bad.yaml"
    assert "YAML" in failed.error
    assert not (mixed_inputs / "bad.yaml.converted.yaml").exists()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unwritable_result_is_isolated_in_bounded_mode(mixed_inputs) -> None:
    summary = await run_batch(str(mixed_inputs / "*.yaml"), UNWRITABLE_FOR_BAD, OutputPolicy(), concurrency=2)

    assert summary.succeeded == 2
    assert summary.failed == 1


@pytest.mark.unit
def test_shared_output_paths_are_reported(tmp_path, caplog) -> None:
    for sub in ("x", "y"):
        (tmp_path / sub).mkdir()
        (tmp_path / sub / "sub.yaml").write_text("{}", encoding="utf-8")
    (tmp_path / "x" / "other.yaml").write_text("{}", encoding="utf-8")
    files = discover_inputs(str(tmp_path / "**" / "*.yaml"))
    out = tmp_path / "out"

    with caplog.at_level(logging.WARNING):
        shared = warn_shared_outputs(files, OutputPolicy(output_dir=out))

    assert shared == [out / "sub.yaml"]
    assert "written by 2 inputs" in caplog.text
    assert warn_shared_outputs(files, OutputPolicy()) == []
