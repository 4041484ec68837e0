"""AFL++ instances for the ensemble fuzzer."""

from __future__ import annotations

import logging
import os
import random
import re
import subprocess
from pathlib import Path
from typing import Callable, Optional

from fuzzinfra.config import AflTool, FuzzerStats, get_afl_tool_path
from fuzzinfra.ensemble.base import Fuzzer
from fuzzinfra.ensemble.options import EnsembleOptions

log = logging.getLogger(__name__)

POWER_SCHEDULES = ("fast", "explore", "coe", "lin", "quad", "exploit", "rare")

_UINT = re.compile(r"\+?[0-9]+")


def _parse_uint(text: str) -> int:
    return int(text) if _UINT.fullmatch(text) else 0


def _parse_float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        return 0.0


def parse_fuzzer_stats(text: str, main_instance: bool) -> FuzzerStats:
    """Read an afl-fuzz `fuzzer_stats` file.

    Stability is only taken from the main instance, as it is inaccurate for
    sanitized binaries.
    """
    entries: dict[str, str] = {}
    for line in text.splitlines():
        parts = line.split(":")
        if len(parts) < 2:
            continue
        entries[parts[0].strip()] = parts[1].strip()

    def entry(key: str) -> str:
        if key not in entries:
            raise ValueError(f"fuzzer_stats lacks `{key}`")
        return entries[key]

    stats = FuzzerStats(
        execs_per_sec=_parse_float(entry("execs_per_sec")),
        corpus_count=_parse_uint(entry("corpus_count")),
        saved_crashes=_parse_uint(entry("saved_crashes")),
        saved_hangs=_parse_uint(entry("saved_hangs")),
    )
    if main_instance:
        stability = entry("stability")
        if not stability.endswith("%"):
            raise ValueError(f"stability is not a percentage: {stability!r}")
        stats.stability = _parse_float(stability[:-1])
    return stats


class AflppFuzzer(Fuzzer):
    """One afl-fuzz instance; instance 0 is the main node, all others are secondaries."""

    def __init__(
        self,
        seeds: Optional[Path],
        workspace: Path,
        binary: Path,
        id: int,
        args: list[str],
        env: dict[str, str],
        nyx: bool,
    ) -> None:
        self.seeds = Path(seeds) if seeds is not None else None
        # Shared by all afl++ instances of an ensemble.
        self.workspace = Path(workspace)
        self.binary = Path(binary)
        self.id = id
        self.args = list(args)
        self.env = dict(env)
        self.nyx = nyx
        self.out_dir = self.workspace / "out"
        self._pull_dir = self.workspace / "pull_corpus"

    @property
    def _instance_dir(self) -> Path:
        return self.out_dir / str(self.id)

    def name(self) -> str:
        return "afl++"

    def instance_name(self) -> str:
        return f"{self.name()}-{self.id}"

    def get_stats(self) -> FuzzerStats:
        try:
            text = (self._instance_dir / "fuzzer_stats").read_text()
        except OSError:
            return FuzzerStats()
        return parse_fuzzer_stats(text, self.id == 0)

    def push_corpus(self) -> Optional[Path]:
        return self._instance_dir / "queue" if self.id == 0 else None

    def pull_corpus(self) -> Optional[Path]:
        return self._pull_dir if self.id == 0 else None

    def solutions(self) -> list[Path]:
        dirs = [self._instance_dir / "crashes"]
        if "ENSEMBLE_FUZZ_IGNORE_HANGS" not in os.environ:
            dirs.append(self._instance_dir / "hangs")
        return dirs

    def start(self) -> subprocess.Popen:
        try:
            self._pull_dir.mkdir()
        except OSError:
            pass

        args = ["-t", "5000", "-i"]
        if self.seeds is not None:
            if not any(self.seeds.iterdir()):
                (self.seeds / "dummy_input").write_bytes(b"AAA")
            args.append(str(self.seeds))
        else:
            args.append("-")

        args += ["-o", str(self.out_dir)]
        if self.nyx:
            args.append("-Y")

        if self.id == 0:
            args += ["-M", str(self.id), "-F", str(self._pull_dir)]
        else:
            args += ["-S", str(self.id)]

        args += self.args
        args += ["--", str(self.binary)]

        debug = "FUZZOR_AFL_DEBUG" in os.environ
        self.env["AFL_NO_UI"] = "1"
        if debug:
            self.env["AFL_DEBUG_CHILD"] = "1"
        # Host variables take precedence over the instance's own settings.
        env = {**self.env, **os.environ}
        command = [get_afl_tool_path(AflTool.AFL_FUZZ), *args]

        if debug:
            log_path = self.workspace / f"aflpp_instance_{self.id}.log"
            with open(log_path, "wb") as log_file:
                return subprocess.Popen(
                    command, env=env, stdout=subprocess.DEVNULL, stderr=log_file
                )
        return subprocess.Popen(
            command, env=env, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
        )


def _apply_setting(
    cores: int,
    name: str,
    value: Optional[str],
    percentage: float,
    used: dict[str, set[int]],
    append: Callable[[int, str, Optional[str]], None],
) -> None:
    """Give a setting to a share of the cores, never twice to the same core."""
    used_by_setting = used.setdefault(name, set())
    for _ in range(int(cores * percentage)):
        free = set(range(cores)) - used_by_setting
        if not free:
            continue
        core = random.choice(sorted(free))
        used_by_setting.add(core)
        append(core, name, value)


def recommended_aflpp_settings(
    cores: int, options: EnsembleOptions
) -> tuple[list[list[str]], list[dict[str, str]]]:
    """Recommended afl-fuzz arguments and environment variables for `cores` instances."""
    envs: list[dict[str, str]] = [{} for _ in range(cores)]
    args: list[list[str]] = [[] for _ in range(cores)]

    def append_env(core: int, var: str, value: Optional[str]) -> None:
        envs[core][var] = value if value is not None else "1"

    def append_arg(core: int, arg: str, value: Optional[str]) -> None:
        args[core].extend(arg.split(" "))
        if value is not None:
            args[core].extend(value.split(" "))

    used_env_vars: dict[str, set[int]] = {}
    _apply_setting(cores, "AFL_DISABLE_TRIM", None, 0.65, used_env_vars, append_env)
    _apply_setting(cores, "AFL_KEEP_TIMEOUTS", None, 0.5, used_env_vars, append_env)
    _apply_setting(cores, "AFL_EXPAND_HAVOC_NOW", None, 0.4, used_env_vars, append_env)

    if "ENSEMBLE_FUZZ_LIMIT_INPUT_LEN" in os.environ:
        _apply_setting(cores, "AFL_INPUT_LEN_MAX", "128", 0.1, used_env_vars, append_env)
        _apply_setting(cores, "AFL_INPUT_LEN_MAX", "8192", 0.1, used_env_vars, append_env)

    used_args: dict[str, set[int]] = {}
    _apply_setting(cores, "-L", "0", 0.1, used_args, append_arg)
    _apply_setting(cores, "-Z", None, 0.1, used_args, append_arg)
    _apply_setting(cores, "-P", "explore", 0.4, used_args, append_arg)
    _apply_setting(cores, "-P", "exploit", 0.2, used_args, append_arg)
    _apply_setting(cores, "-a", "binary", 0.3, used_args, append_arg)
    _apply_setting(cores, "-a", "ascii", 0.3, used_args, append_arg)

    for core in range(cores):
        append_arg(core, "-p", POWER_SCHEDULES[core % len(POWER_SCHEDULES)])

    if options.aflpp_cmplog_binary is not None:
        cmplog = f"-c {options.aflpp_cmplog_binary}"
        for level in ("-l 2", "-l 3", "-l 2AT"):
            _apply_setting(cores, cmplog, level, 0.1, used_args, append_arg)

    return args, envs