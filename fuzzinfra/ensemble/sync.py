"""Periodic corpus synchronisation and stats reporting across ensembled fuzzers."""

from __future__ import annotations

import logging
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Iterable, Optional, Sequence

import yaml

from fuzzinfra.config import FuzzerStats
from fuzzinfra.ensemble.base import Fuzzer, aggregate_stats

log = logging.getLogger(__name__)

_TRANSFERRED_PREFIX = "Number of regular files transferred:"
_UINT = re.compile(r"\+?[0-9]+")


def parse_rsync_transferred(stdout: str) -> int:
    """Number of transferred files from `rsync --stats` output; 0 if absent or unreadable."""
    for line in stdout.splitlines():
        if line.startswith(_TRANSFERRED_PREFIX):
            parts = line.split(":")
            number = parts[1].strip() if len(parts) > 1 else ""
            return int(number) if _UINT.fullmatch(number) else 0
    return 0


def sync_folders(source: Path, destination: Path) -> Optional[int]:
    """Copy files missing in `destination` from `source`; None if rsync could not run."""
    try:
        result = subprocess.run(
            [
                "rsync",
                "--recursive",
                "--archive",
                "--checksum",
                "--checksum-choice=sha1",
                "--ignore-existing",
                "--stats",
                f"{source}/",
                str(destination),
            ],
            capture_output=True,
            check=False,
        )
    except OSError:
        return None
    try:
        stdout = result.stdout.decode("utf-8")
    except UnicodeDecodeError:
        return None

    transferred = parse_rsync_transferred(stdout)
    log.debug("Synced %d files from %s to %s", transferred, source, destination)
    return transferred


def ensemble_fuzzers(
    fuzzers: Sequence[Fuzzer], global_corpus: Path, global_solutions: Path
) -> tuple[int, int, int]:
    """Push to, pull from and collect solutions into the global directories.

    Returns the numbers of inputs pushed, inputs pulled and solutions collected.
    """
    pushed = 0
    for fuzzer in fuzzers:
        push = fuzzer.push_corpus()
        if push is not None:
            pushed += sync_folders(push, global_corpus) or 0

    pulled = 0
    for fuzzer in fuzzers:
        pull = fuzzer.pull_corpus()
        if pull is not None:
            pulled += sync_folders(global_corpus, pull) or 0

    solutions = 0
    for fuzzer in fuzzers:
        for solution_dir in fuzzer.solutions():
            solutions += sync_folders(solution_dir, global_solutions) or 0

    log.info(
        "Global queue update: pulled in %d inputs and %d solutions, pushed %d inputs",
        pulled,
        solutions,
        pushed,
    )
    return pushed, pulled, solutions


class EnsembleTask:
    """Background task syncing corpora every `sync_interval` seconds.

    Aggregated stats are logged and written to `stats.yaml` in the workspace, also
    every `stats_interval` seconds. The global corpus is the union of all fuzzers'
    corpora and is not minimized.
    """

    def __init__(
        self,
        fuzzers: Iterable[Fuzzer],
        sync_interval: float,
        stats_interval: float,
        workspace: Path,
    ) -> None:
        if sync_interval <= 0 or stats_interval <= 0:
            raise ValueError("intervals must be positive")
        self.fuzzers = list(fuzzers)
        self.sync_interval = sync_interval
        self.stats_interval = stats_interval
        self.workspace = Path(workspace)
        self.global_corpus = self.workspace / "corpus"
        self.global_solutions = self.workspace / "solutions"
        self._quit = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self, only_stats: bool = False) -> FuzzerStats:
        """Aggregate stats, sync unless only stats are due, and write `stats.yaml`."""
        # Stats are taken before syncing so the global directories never hold fewer
        # solutions than the stats report.
        stats = aggregate_stats(self.fuzzers, self.global_corpus)
        log.info("%s", stats)

        if not only_stats or stats.has_solutions():
            ensemble_fuzzers(self.fuzzers, self.global_corpus, self.global_solutions)

        (self.workspace / "stats.yaml").write_text(
            yaml.safe_dump(stats.to_dict(), sort_keys=False)
        )
        return stats

    def _run(self) -> None:
        now = time.monotonic()
        next_sync = now
        next_stats = now
        while True:
            due = min(next_sync, next_stats)
            if self._quit.wait(max(0.0, due - time.monotonic())):
                self.run_once(only_stats=False)
                return
            if next_sync <= time.monotonic():
                next_sync += self.sync_interval
                only_stats = False
            else:
                next_stats += self.stats_interval
                only_stats = True
            self.run_once(only_stats)

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("ensemble task already started")
        self._quit.clear()
        self._thread = threading.Thread(target=self._run, name="ensemble", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Sync one last time and wait for the task to finish."""
        self._quit.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None