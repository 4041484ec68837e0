"""Common interface of fuzz engines run side by side, and stats aggregation."""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

from fuzzinfra.config import FuzzerStats

log = logging.getLogger(__name__)


class Fuzzer(ABC):
    """A fuzz engine instance that can be ensembled with others."""

    @abstractmethod
    def name(self) -> str:
        """Name of the underlying fuzz engine."""

    @abstractmethod
    def instance_name(self) -> str:
        """Name of this fuzz instance."""

    @abstractmethod
    def get_stats(self) -> FuzzerStats:
        """Latest statistics of this instance."""

    @abstractmethod
    def push_corpus(self) -> Optional[Path]:
        """Corpus the fuzzer writes new inputs to."""

    @abstractmethod
    def pull_corpus(self) -> Optional[Path]:
        """Corpus the fuzzer picks up new inputs from."""

    @abstractmethod
    def solutions(self) -> list[Path]:
        """Directories holding solutions found by the fuzzer."""

    @abstractmethod
    def start(self) -> subprocess.Popen:
        """Start the fuzzer instance."""


def aggregate_stats(fuzzers: Iterable[Fuzzer], global_corpus: Path) -> FuzzerStats:
    """Combine the stats of several instances.

    Rates and counts are summed; stability is the minimum reported, and the corpus
    count is the number of entries in the global corpus.
    """
    stats = FuzzerStats()
    stability: Optional[float] = None
    for fuzzer in fuzzers:
        other = fuzzer.get_stats()
        log.debug("%s stats: %s", fuzzer.instance_name(), other)

        stats.execs_per_sec += other.execs_per_sec
        if other.stability is not None:
            stability = other.stability if stability is None else min(stability, other.stability)
        stats.saved_crashes += other.saved_crashes
        stats.saved_hangs += other.saved_hangs

    stats.stability = stability
    stats.corpus_count = sum(1 for _ in Path(global_corpus).iterdir())
    return stats