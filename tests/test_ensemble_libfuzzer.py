import time
from pathlib import Path

import pytest

from fuzzinfra.config import FuzzerStats
from fuzzinfra.ensemble.libfuzzer import LibFuzzer, parse_status_line

LINE = (
    "#505851: cov: 5744 ft: 5240 corp: 1284 exec/s: 20917 "
    "oom/timeout/crash: 0/0/0 time: 36s job: 7 dft_time: 0"
)
CARGO_LINE = (
    "#79983: cov: 136 ft: 193 corp: 41 exec/s 16059 "
    "oom/timeout/crash: 0/0/0 time: 5s job: 2 dft_time: 0"
)
CRASH_LINE = "#1: cov: 1 ft: 1 corp: 7 exec/s: 10 oom/timeout/crash: 0/2/3 time: 1s"


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_parse_status_line(tmp_path):
    assert parse_status_line(LINE, tmp_path) == FuzzerStats(
        execs_per_sec=20917.0, stability=None, corpus_count=1284, saved_crashes=0, saved_hangs=0
    )


def test_parse_cargo_fuzz_line(tmp_path):
    stats = parse_status_line(CARGO_LINE, tmp_path)
    assert stats.corpus_count == 41
    assert stats.execs_per_sec == 16059.0


def test_non_status_line_is_ignored(tmp_path):
    assert parse_status_line("INFO: Seed: 1234", tmp_path) is None


def test_crash_without_file_is_not_counted(tmp_path):
    stats = parse_status_line(CRASH_LINE, tmp_path)
    assert stats.saved_crashes == 0
    assert stats.saved_hangs == 2


def test_crash_with_file_is_counted(tmp_path):
    (tmp_path / "crash-abc").write_bytes(b"x")
    assert parse_status_line(CRASH_LINE, tmp_path).saved_crashes == 3


def test_crash_with_missing_dir_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        parse_status_line(CRASH_LINE, tmp_path / "missing")


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


def test_constructor_creates_directories(workspace):
    fuzzer = LibFuzzer(workspace / "corpus", workspace, Path("bin"), [], {}, "vanilla-0")
    assert (workspace / "corpus").is_dir()
    assert fuzzer.solutions() == [workspace / "solutions"]
    assert (workspace / "solutions").is_dir()


def test_names_and_corpora(workspace):
    fuzzer = LibFuzzer(workspace / "corpus", workspace, Path("bin"), [], {}, "vanilla-0")
    assert fuzzer.name() == "libfuzzer"
    assert fuzzer.instance_name() == "libfuzzer-vanilla-0"
    assert fuzzer.push_corpus() == workspace / "corpus"
    assert fuzzer.pull_corpus() == workspace / "corpus"
    assert fuzzer.get_stats() == FuzzerStats()


def test_start_passes_arguments_and_parses_log(workspace, tmp_path):
    args_file = tmp_path / "args.txt"
    script = tmp_path / "harness.sh"
    script.write_text(f'#!/bin/sh\necho "$@" > "{args_file}"\necho "{LINE}" >&2\n')
    script.chmod(0o755)

    fuzzer = LibFuzzer(workspace / "corpus", workspace, script, ["-fork=1"], {}, "vanilla-0")
    process = fuzzer.start()
    assert process.wait(timeout=10) == 0

    assert _wait_for(lambda: fuzzer.get_stats().corpus_count == 1284)
    assert args_file.read_text().strip() == (
        f"-fork=1 -timeout=5 -artifact_prefix={workspace / 'solutions'}/ {workspace / 'corpus'}"
    )