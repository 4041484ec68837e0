"""Honggfuzz instances for the ensemble fuzzer."""

from __future__ import annotations

import logging
import os
import re
import secrets
import string
import subprocess
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional

from fuzzinfra.config import FuzzerStats
from fuzzinfra.ensemble.base import Fuzzer

log = logging.getLogger(__name__)

_UINT = re.compile(r"\+?[0-9]+")
_POLL_INTERVAL = 0.2
_ALPHANUMERIC = string.ascii_letters + string.digits


def parse_stats_line(line: str, stats: FuzzerStats) -> FuzzerStats:
    """Update stats from one line of a honggfuzz stats file.

    Columns: unix_time, last_cov_update, total_exec, exec_per_sec, crashes,
    unique_crashes, hangs, edge_cov, block_cov. Comment lines leave stats unchanged.
    """
    text = line.strip()
    if not text or text.startswith("#"):
        return stats
    fields = [field.strip() for field in text.split(",")]
    if len(fields) < 6 or not all(_UINT.fullmatch(field) for field in fields):
        raise ValueError(f"malformed honggfuzz stats line: {line!r}")
    numbers = [int(field) for field in fields]
    # Honggfuzz does not save timeouts to disk, so hangs are not counted.
    return replace(stats, execs_per_sec=float(numbers[3]), saved_crashes=numbers[5])


class HonggFuzzer(Fuzzer):
    """A multi-threaded honggfuzz instance."""

    def __init__(self, binary: Path, workspace: Path, num_threads: int) -> None:
        self.binary = Path(binary)
        self.corpus = Path(workspace) / "corpus"
        self.solutions_dir = Path(workspace) / "solutions"
        self.num_threads = num_threads
        self._stats = FuzzerStats()
        self._lock = threading.Lock()
        self._follower: Optional[threading.Thread] = None

    def name(self) -> str:
        return "honggfuzz"

    def instance_name(self) -> str:
        return self.name()

    def get_stats(self) -> FuzzerStats:
        with self._lock:
            return replace(self._stats)

    def push_corpus(self) -> Optional[Path]:
        return self.corpus

    def pull_corpus(self) -> Optional[Path]:
        return None

    def solutions(self) -> list[Path]:
        return [self.solutions_dir]

    def _apply_line(self, line: str) -> None:
        log.debug("honggfuzz: %s", line)
        with self._lock:
            try:
                self._stats = parse_stats_line(line, self._stats)
            except ValueError as error:
                log.warning("%s", error)

    def _follow_stats(self, path: Path) -> None:
        """Read lines appended to the stats file, waiting for it to appear."""
        stop = threading.Event()
        handle = None
        pending = ""
        try:
            while True:
                if handle is None:
                    try:
                        handle = open(path, encoding="utf-8", errors="replace")
                    except OSError:
                        stop.wait(_POLL_INTERVAL)
                        continue
                chunk = handle.read()
                if not chunk:
                    stop.wait(_POLL_INTERVAL)
                    continue
                pending += chunk
                *lines, pending = pending.split("\n")
                for line in lines:
                    self._apply_line(line)
        finally:
            if handle is not None:
                handle.close()

    def start(self) -> subprocess.Popen:
        self.corpus.mkdir(parents=True, exist_ok=True)
        self.solutions_dir.mkdir(parents=True, exist_ok=True)

        suffix = "".join(secrets.choice(_ALPHANUMERIC) for _ in range(16))
        stats_file = Path(tempfile.gettempdir()) / f"honggfuzz-{suffix}.stats"

        self._follower = threading.Thread(
            target=self._follow_stats, args=(stats_file,), daemon=True
        )
        self._follower.start()

        args = [
            "--timeout", "10",
            "--verbose",
            "--quiet",
            "--statsfile", str(stats_file),
            "--input", str(self.corpus),
            "--crashdir", str(self.solutions_dir),
            "--threads", str(self.num_threads),
            "--", str(self.binary),
        ]
        return subprocess.Popen(
            ["honggfuzz", *args],
            env=dict(os.environ),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )