from pathlib import Path

import pytest

from fuzzinfra.config import FuzzerStats
from fuzzinfra.ensemble.semsan import SemSanFuzzer, parse_status_line, select_semsan_binary

LINE = (
    "[UserStats #0] run time: 0h-0m-0s, clients: 1, corpus: 18, objectives: 0, "
    "executions: 536, exec/sec: 0.000, combined-coverage: 8/65599 (0%), stability: 4/7 (57%)"
)
LINE_WITH_SOLUTIONS = (
    "[UserStats #0] run time: 0h-1m-0s, clients: 1, corpus: 20, objectives: 3, "
    "executions: 604, exec/sec: 12.500, combined-coverage: 8/65599 (0%), stability: 4/7 (57%)"
)

X86_INFO = "/bin/h: ELF 64-bit LSB pie executable, x86-64, version 1 (SYSV), dynamically linked"
AARCH64_INFO = "/bin/h: ELF 64-bit LSB executable, ARM aarch64, version 1 (SYSV), static"
ARM_INFO = "/bin/h: ELF 32-bit LSB executable, ARM, EABI5 version 1 (SYSV), static"


def test_parse_status_line():
    assert parse_status_line(LINE) == FuzzerStats(
        execs_per_sec=0.0, stability=None, corpus_count=18, saved_crashes=0, saved_hangs=0
    )


def test_parse_status_line_with_solutions():
    stats = parse_status_line(LINE_WITH_SOLUTIONS)
    assert stats.saved_crashes == 3
    assert stats.execs_per_sec == 12.5
    assert stats.corpus_count == 20
    assert stats.has_solutions()


def test_parse_other_line():
    assert parse_status_line("[Testcase #0] new corpus entry") is None


@pytest.mark.parametrize(
    "info, host, expected",
    [
        (ARM_INFO, "x86_64", "semsan-arm"),
        (X86_INFO, "x86_64", "semsan"),
        (X86_INFO, "aarch64", "semsan-x86_64"),
        (AARCH64_INFO, "aarch64", "semsan"),
        (AARCH64_INFO, "x86_64", "semsan-aarch64"),
        ("/bin/h: data, something, else", "x86_64", "semsan"),
    ],
)
def test_select_semsan_binary(info, host, expected):
    assert select_semsan_binary(info, host) == expected


def test_select_semsan_binary_rejects_short_info():
    with pytest.raises(ValueError):
        select_semsan_binary("/bin/h: cannot open", "x86_64")


def test_fuzzer_paths(tmp_path):
    fuzzer = SemSanFuzzer(
        Path("primary"), Path("secondary"), tmp_path / "seeds", tmp_path / "solutions",
        tmp_path / "pull_corpus", "equal",
    )
    assert fuzzer.name() == "semsan"
    assert fuzzer.instance_name() == "semsan"
    assert fuzzer.push_corpus() is None
    assert fuzzer.pull_corpus() == tmp_path / "pull_corpus"
    assert fuzzer.solutions() == [tmp_path / "solutions"]
    assert fuzzer.get_stats() == FuzzerStats()