"""Native Go fuzzing instances for the ensemble fuzzer."""

from __future__ import annotations

import logging
import os
import re
import subprocess
import threading
from dataclasses import replace
from pathlib import Path
from typing import IO, Optional

from fuzzinfra.config import FuzzerStats
from fuzzinfra.ensemble.base import Fuzzer

log = logging.getLogger(__name__)

# Matches lines such as
#   "fuzz: elapsed: 3s, execs: 29639 (9879/sec), new interesting: 9 (total: 9)"
_STATUS = re.compile(
    r"fuzz: elapsed: [0-9]*s, execs: [0-9]* \((?P<execs_per_sec>[0-9]*)/sec\), "
    r"new interesting: [0-9]* \(total: (?P<corpus>[0-9]*)\)"
)


def parse_status_line(line: str) -> Optional[tuple[float, int]]:
    """Executions per second and corpus size from a `go test -fuzz` status line."""
    match = _STATUS.search(line)
    if match is None:
        return None
    execs = match["execs_per_sec"]
    corpus = match["corpus"]
    return (float(execs) if execs else 0.0, int(corpus) if corpus else 0)


class NativeGoFuzzer(Fuzzer):
    """A native Go fuzzing run; it occupies all cores on its own."""

    def __init__(self, binary: Path, workspace: Path) -> None:
        self.binary = Path(binary)
        self.go_fuzz_cache_dir = Path(workspace) / "fuzzcache"
        self.solutions_dir = Path(workspace) / "solutions"
        self._stats = FuzzerStats()
        self._lock = threading.Lock()

    def harness_name(self) -> str:
        """Fuzz target name, e.g. `some/path/fuzz_pkg_FuzzFoo` gives `FuzzFoo`."""
        return self.binary.name.split("_")[-1]

    def name(self) -> str:
        return "native-go"

    def instance_name(self) -> str:
        return self.name()

    def get_stats(self) -> FuzzerStats:
        with self._lock:
            return replace(self._stats)

    def push_corpus(self) -> Optional[Path]:
        return self.go_fuzz_cache_dir / self.harness_name()

    def pull_corpus(self) -> Optional[Path]:
        return None

    def solutions(self) -> list[Path]:
        return []

    def _parse_log(self, stream: IO[str]) -> None:
        for raw in stream:
            line = raw.rstrip("\n")
            log.debug("native-go: %s", line)
            parsed = parse_status_line(line)
            if parsed is None:
                continue
            execs_per_sec, corpus_count = parsed
            with self._lock:
                self._stats = replace(
                    self._stats, execs_per_sec=execs_per_sec, corpus_count=corpus_count
                )

        # Go writes failing inputs to testdata/ when the run ends with a crash.
        if Path("testdata/").exists():
            with self._lock:
                self._stats.saved_crashes += 1

    def start(self) -> subprocess.Popen:
        self.solutions_dir.mkdir(parents=True, exist_ok=True)
        self.go_fuzz_cache_dir.mkdir(parents=True, exist_ok=True)

        process = subprocess.Popen(
            ["bash", str(self.binary), str(self.go_fuzz_cache_dir)],
            env=dict(os.environ),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
        threading.Thread(target=self._parse_log, args=(process.stderr,), daemon=True).start()
        return process