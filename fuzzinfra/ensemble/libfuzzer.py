"""libFuzzer instances for the ensemble fuzzer."""

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

# Matches status lines such as
#   "#505851: cov: 5744 ft: 5240 corp: 1284 exec/s: 20917 oom/timeout/crash: 0/0/0 time: 36s"
# cargo-fuzz omits the ":" after "exec/s", so it is optional.
_STATUS = re.compile(
    r"#[0-9]*: cov: [0-9]* ft: [0-9]* corp: (?P<corpus>[0-9]*) exec/s:? "
    r"(?P<execs_per_sec>[0-9]*) oom/timeout/crash: [0-9]*/(?P<hangs>[0-9]*)/(?P<crashes>[0-9]*)"
)


def _uint(text: str) -> int:
    return int(text) if text else 0


def parse_status_line(line: str, crash_dir: Path) -> Optional[FuzzerStats]:
    """Stats from one libFuzzer status line, or None if the line is not one.

    A reported crash only counts if the crash directory actually holds a file.
    """
    match = _STATUS.search(line)
    if match is None:
        return None

    saved_crashes = _uint(match["crashes"])
    if saved_crashes > 0:
        crashes = list(Path(crash_dir).iterdir())
        if not crashes:
            # libFuzzer reported a crash without storing it on disk.
            saved_crashes = 0
        else:
            log.debug("Solutions in %s: %s", crash_dir, crashes)

    execs = match["execs_per_sec"]
    return FuzzerStats(
        execs_per_sec=float(execs) if execs else 0.0,
        corpus_count=_uint(match["corpus"]),
        stability=None,  # libFuzzer does not report stability
        saved_hangs=_uint(match["hangs"]),
        saved_crashes=saved_crashes,
    )


class LibFuzzer(Fuzzer):
    """One libFuzzer instance running in fork mode."""

    def __init__(
        self,
        seeds: Path,
        workspace: Path,
        binary: Path,
        args: list[str],
        env: dict[str, str],
        instance_tag: str,
    ) -> None:
        self.seeds = Path(seeds)
        self.workspace = Path(workspace)
        self.binary = Path(binary)
        self.args = list(args)
        self.env = dict(env)
        self.instance_tag = instance_tag
        self._stats: Optional[FuzzerStats] = None
        self._lock = threading.Lock()

        if not self.seeds.exists():
            self.seeds.mkdir()
        for solution_dir in self.solutions():
            if not solution_dir.exists():
                solution_dir.mkdir()

    def name(self) -> str:
        return "libfuzzer"

    def instance_name(self) -> str:
        return f"{self.name()}-{self.instance_tag}"

    def get_stats(self) -> FuzzerStats:
        with self._lock:
            return replace(self._stats) if self._stats is not None else FuzzerStats()

    def push_corpus(self) -> Optional[Path]:
        return self.seeds

    def pull_corpus(self) -> Optional[Path]:
        return self.seeds

    def solutions(self) -> list[Path]:
        return [self.workspace / "solutions"]

    def _parse_log(self, stream: IO[str], crash_dir: Path) -> None:
        for raw in stream:
            line = raw.rstrip("\n")
            try:
                stats = parse_status_line(line, crash_dir)
            except OSError as error:
                log.warning("%s: %s", self.instance_name(), error)
                continue
            log.debug("(%s) %s", stats is not None, line)
            if stats is not None:
                with self._lock:
                    self._stats = stats

    def start(self) -> subprocess.Popen:
        crash_dir = self.solutions()[0]
        args = [*self.args, "-timeout=5", f"-artifact_prefix={crash_dir}/", str(self.seeds)]
        process = subprocess.Popen(
            [str(self.binary), *args],
            env={**self.env, **os.environ},
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
        threading.Thread(
            target=self._parse_log, args=(process.stderr, crash_dir), daemon=True
        ).start()
        return process