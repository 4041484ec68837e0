from pathlib import Path
from typing import Optional

import pytest

from fuzzinfra.config import FuzzerStats
from fuzzinfra.ensemble.base import Fuzzer, aggregate_stats


class _StaticFuzzer(Fuzzer):
    def __init__(self, stats: FuzzerStats):
        self._stats = stats

    def name(self) -> str:
        return "static"

    def instance_name(self) -> str:
        return "static-0"

    def get_stats(self) -> FuzzerStats:
        return self._stats

    def push_corpus(self) -> Optional[Path]:
        return None

    def pull_corpus(self) -> Optional[Path]:
        return None

    def solutions(self) -> list[Path]:
        return []

    def start(self):
        raise RuntimeError("instances are never started in these tests")


def _corpus(tmp_path: Path, files: int) -> Path:
    corpus = tmp_path / "corpus"
    corpus.mkdir()
    for index in range(files):
        (corpus / f"input-{index}").write_bytes(b"x")
    return corpus


def test_fuzzer_is_abstract():
    with pytest.raises(TypeError):
        Fuzzer()


def test_aggregate_combines_instances(tmp_path):
    corpus = _corpus(tmp_path, 3)
    fuzzers = [
        _StaticFuzzer(FuzzerStats(execs_per_sec=10.0, stability=90.0, saved_crashes=1,
                                  corpus_count=99)),
        _StaticFuzzer(FuzzerStats(execs_per_sec=0.0, stability=80.0, saved_hangs=2)),
        _StaticFuzzer(FuzzerStats()),
    ]
    stats = aggregate_stats(fuzzers, corpus)
    assert stats.execs_per_sec == 10.0
    assert stats.stability == 80.0
    assert stats.saved_crashes == 1
    assert stats.saved_hangs == 2
    assert stats.corpus_count == 3
    assert stats.has_solutions()


def test_aggregate_without_stability(tmp_path):
    corpus = _corpus(tmp_path, 0)
    stats = aggregate_stats([_StaticFuzzer(FuzzerStats())], corpus)
    assert stats.stability is None
    assert stats.corpus_count == 0
    assert not stats.has_solutions()


def test_aggregate_single_stability_kept(tmp_path):
    corpus = _corpus(tmp_path, 1)
    fuzzers = [_StaticFuzzer(FuzzerStats()), _StaticFuzzer(FuzzerStats(stability=75.5))]
    assert aggregate_stats(fuzzers, corpus).stability == 75.5


def test_aggregate_missing_corpus_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        aggregate_stats([], tmp_path / "missing")