"""SemSan differential fuzzing instances for the ensemble fuzzer."""

from __future__ import annotations

import logging
import os
import platform
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
#   "[UserStats #0] run time: 0h-0m-0s, clients: 1, corpus: 18, objectives: 0, executions: 536,
#    exec/sec: 0.000, combined-coverage: 8/65599 (0%), stability: 4/7 (57%)"
_STATUS = re.compile(
    r".* run time: .*, clients: .*, corpus: (?P<corpus>[0-9]*), objectives: (?P<solutions>.*), "
    r"executions: .*, exec/sec: (?P<execs_per_sec>.*), combined-coverage: .*, "
    r"stability: [0-9]*/[0-9]* \((?P<stability>[0-9]*)%"
)
_UINT = re.compile(r"\+?[0-9]+")


def _uint(text: str) -> int:
    return int(text) if _UINT.fullmatch(text) else 0


def _float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        return 0.0


def parse_status_line(line: str) -> Optional[FuzzerStats]:
    """Stats from one SemSan status line, or None if the line is not one."""
    match = _STATUS.search(line)
    if match is None:
        return None
    return FuzzerStats(
        execs_per_sec=_float(match["execs_per_sec"]),
        corpus_count=_uint(match["corpus"]),
        stability=None,
        saved_hangs=0,  # SemSan does not store hangs
        saved_crashes=_uint(match["solutions"]),
    )


def _host_arch() -> str:
    machine = platform.machine().lower()
    return {"amd64": "x86_64", "arm64": "aarch64"}.get(machine, machine)


def select_semsan_binary(file_info: str, host_arch: Optional[str] = None) -> str:
    """SemSan executable able to run a harness, from `file` output describing the harness."""
    fields = file_info.split(",")
    if len(fields) <= 2:
        raise ValueError(f"unexpected file info: {file_info!r}")
    arch = _host_arch() if host_arch is None else host_arch
    x86_64_bin = "semsan" if arch == "x86_64" else "semsan-x86_64"
    aarch64_bin = "semsan" if arch == "aarch64" else "semsan-aarch64"
    return {
        " ARM": "semsan-arm",
        " x86-64": x86_64_bin,
        " ARM aarch64": aarch64_bin,
    }.get(fields[1], "semsan")


class SemSanFuzzer(Fuzzer):
    """A SemSan instance comparing a primary and a secondary harness build."""

    def __init__(
        self,
        primary_binary: Path,
        secondary_binary: Path,
        seeds: Path,
        solutions: Path,
        pull_corpus: Path,
        comparator: str,
    ) -> None:
        self.primary_binary = Path(primary_binary)
        self.secondary_binary = Path(secondary_binary)
        self.seeds = Path(seeds)
        self.solutions_dir = Path(solutions)
        self.pull_dir = Path(pull_corpus)
        self.comparator = comparator
        self._stats: Optional[FuzzerStats] = None
        self._lock = threading.Lock()

    def name(self) -> str:
        return "semsan"

    def instance_name(self) -> str:
        return self.name()

    def get_stats(self) -> FuzzerStats:
        with self._lock:
            return replace(self._stats) if self._stats is not None else FuzzerStats()

    def push_corpus(self) -> Optional[Path]:
        return None

    def pull_corpus(self) -> Optional[Path]:
        return self.pull_dir

    def solutions(self) -> list[Path]:
        return [self.solutions_dir]

    def _parse_log(self, stream: IO[str]) -> None:
        for raw in stream:
            stats = parse_status_line(raw.rstrip("\n"))
            if stats is not None:
                with self._lock:
                    self._stats = stats

    def start(self) -> subprocess.Popen:
        for directory in (self.solutions_dir, self.seeds, self.pull_dir):
            directory.mkdir(parents=True, exist_ok=True)

        if not any(self.seeds.iterdir()):
            (self.seeds / "dummy_input").write_bytes(b"AAA")

        file_info = subprocess.run(
            ["file", str(self.secondary_binary)], capture_output=True, check=False
        ).stdout.decode("utf-8", errors="replace")
        semsan_binary = select_semsan_binary(file_info)

        env = dict(os.environ)
        command = [semsan_binary]
        custom = os.environ.get("SEMSAN_CUSTOM_COMPARATOR")
        if custom is not None:
            env["LD_PRELOAD"] = custom
            command += ["--comparator", "custom"]
        else:
            command += ["--comparator", self.comparator]
        command += [
            "--timeout", "5000",
            "--ignore-exit-kind",
            str(self.primary_binary), str(self.secondary_binary),
            "fuzz",
            "--seeds", str(self.seeds),
            "--solutions", str(self.solutions_dir),
            "--foreign-corpus", str(self.pull_dir),
            "--ignore-solutions",
        ]

        process = subprocess.Popen(
            command,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
        threading.Thread(target=self._parse_log, args=(process.stdout,), daemon=True).start()
        return process