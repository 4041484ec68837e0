import time
from pathlib import Path

import pytest

from fuzzinfra.config import FuzzerStats
from fuzzinfra.ensemble.native_go import NativeGoFuzzer, parse_status_line

LINE = "fuzz: elapsed: 3s, execs: 29639 (9879/sec), new interesting: 9 (total: 9)"
LINE_LATER = "fuzz: elapsed: 15s, execs: 184024 (12864/sec), new interesting: 9 (total: 9)"


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_parse_status_line():
    assert parse_status_line(LINE) == (9879.0, 9)
    assert parse_status_line(LINE_LATER) == (12864.0, 9)


def test_parse_other_line():
    assert parse_status_line("fuzz: elapsed: 0s, gathering baseline coverage: 0/9") is None


def test_harness_name_and_corpora(tmp_path):
    fuzzer = NativeGoFuzzer(Path("some/path/fuzz_pkg_FuzzFoo"), tmp_path)
    assert fuzzer.harness_name() == "FuzzFoo"
    assert fuzzer.push_corpus() == tmp_path / "fuzzcache" / "FuzzFoo"
    assert fuzzer.pull_corpus() is None
    assert fuzzer.solutions() == []
    assert fuzzer.name() == "native-go"
    assert fuzzer.instance_name() == "native-go"


def test_initial_stats_are_empty(tmp_path):
    assert NativeGoFuzzer(Path("fuzz_FuzzFoo"), tmp_path).get_stats() == FuzzerStats()


@pytest.fixture
def script(tmp_path):
    path = tmp_path / "fuzz_pkg_FuzzFoo"
    path.write_text(f'echo "{LINE}" >&2\n')
    return path


def test_start_parses_log(tmp_path, script, monkeypatch):
    monkeypatch.chdir(tmp_path)
    workspace = tmp_path / "ws"
    fuzzer = NativeGoFuzzer(script, workspace)
    process = fuzzer.start()
    assert process.wait(timeout=10) == 0
    assert _wait_for(lambda: fuzzer.get_stats().corpus_count == 9)
    stats = fuzzer.get_stats()
    assert stats.execs_per_sec == 9879.0
    assert stats.saved_crashes == 0
    assert (workspace / "fuzzcache").is_dir()
    assert (workspace / "solutions").is_dir()


def test_testdata_counts_as_crash(tmp_path, script, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "testdata").mkdir()
    fuzzer = NativeGoFuzzer(script, tmp_path / "ws")
    process = fuzzer.start()
    assert process.wait(timeout=10) == 0
    assert _wait_for(lambda: fuzzer.get_stats().saved_crashes == 1)