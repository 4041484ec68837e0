"""Command that runs several fuzz engines on one harness and keeps their corpora in sync."""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from fuzzinfra.ensemble.aflpp import AflppFuzzer, recommended_aflpp_settings
from fuzzinfra.ensemble.base import Fuzzer
from fuzzinfra.ensemble.honggfuzz import HonggFuzzer
from fuzzinfra.ensemble.libfuzzer import LibFuzzer
from fuzzinfra.ensemble.native_go import NativeGoFuzzer
from fuzzinfra.ensemble.options import EnsembleOptions, parse_options
from fuzzinfra.ensemble.semsan import SemSanFuzzer
from fuzzinfra.ensemble.sync import EnsembleTask

log = logging.getLogger(__name__)

STATS_INTERVAL = 60
LIBFUZZER_ARGS = ("-fork=1", "-ignore_crashes=1", "-ignore_ooms=1", "-ignore_timeouts=1")


def _cpu_count() -> int:
    return os.cpu_count() or 1


def ensure_dir(path: Path) -> Path:
    """Create `path` (and its parents) if missing and return it."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def num_cores_requested(options: EnsembleOptions) -> int:
    """Number of cores the requested fuzz instances occupy."""
    binaries = (
        options.aflpp_binary,
        options.aflpp_cmplog_binary,
        options.aflpp_ubsan_binary,
        options.aflpp_asan_binary,
        options.aflpp_msan_binary,
        options.libfuzzer_binary,
        options.libfuzzer_ubsan_binary,
        options.libfuzzer_asan_binary,
        options.libfuzzer_msan_binary,
        options.native_go_binary,
        options.honggfuzz_binary,
    )
    flagged = sum(1 for binary in binaries if binary is not None)
    flagged += int(options.libfuzzer_value_profile)
    return (
        flagged
        + options.libfuzzer_additional_cores
        + options.honggfuzz_additional_cores
        + len(options.semsan_secondary_binaries)
    )


def setup_aflpp_instances(
    options: EnsembleOptions, cores_requested: int, fuzzers: list[Fuzzer]
) -> None:
    """Add afl++ instances: main, cmplog, sanitizer builds and optionally the spare cores."""
    cpus = _cpu_count()
    if cpus < cores_requested:
        raise ValueError(f"{cores_requested} cores requested but only {cpus} available")
    extra_cores = cpus - cores_requested

    extra_args: list[str] = []
    if options.dictionary is not None:
        extra_args = ["-x", str(options.dictionary)]

    binary = options.aflpp_binary
    if binary is None:
        return

    workspace = Path(options.workspace) / "aflpp"
    seeds = ensure_dir(workspace / "corpus")

    def add(target: Path, args: list[str], env: dict[str, str]) -> None:
        fuzzers.append(
            AflppFuzzer(seeds, workspace, target, len(fuzzers), args, env, options.aflpp_nyx)
        )

    add(binary, list(extra_args), {})

    if options.aflpp_cmplog_binary is not None:
        add(binary, [*extra_args, "-c", str(options.aflpp_cmplog_binary)], {})

    for sanitizer_binary in (
        options.aflpp_msan_binary,
        options.aflpp_ubsan_binary,
        options.aflpp_asan_binary,
    ):
        if sanitizer_binary is not None:
            add(sanitizer_binary, list(extra_args), {})

    if options.aflpp_occupy:
        all_args, all_envs = recommended_aflpp_settings(extra_cores, options)
        for args, env in zip(all_args, all_envs):
            add(binary, [*args, *extra_args], env)


def setup_libfuzzer_instances(options: EnsembleOptions, fuzzers: list[Fuzzer]) -> None:
    """Add libFuzzer instances: vanilla cores, value profile and sanitizer builds."""
    base_args = list(LIBFUZZER_ARGS)
    if options.dictionary is not None:
        base_args.append(str(options.dictionary))

    binary = options.libfuzzer_binary
    if binary is None:
        return

    root = Path(options.workspace)
    for index in range(options.libfuzzer_additional_cores + 1):
        workspace = root / f"libfuzzer-{index}"
        seeds = ensure_dir(workspace / "corpus")
        fuzzers.append(LibFuzzer(seeds, workspace, binary, list(base_args), {}, f"vanilla-{index}"))

    if options.libfuzzer_value_profile:
        workspace = root / "libfuzzer-value-profile"
        seeds = ensure_dir(workspace / "corpus")
        fuzzers.append(
            LibFuzzer(
                seeds, workspace, binary, [*base_args, "-use_value_profile=1"], {}, "value-profile"
            )
        )

    for label, sanitizer_binary in (
        ("ubsan", options.libfuzzer_ubsan_binary),
        ("asan", options.libfuzzer_asan_binary),
        ("msan", options.libfuzzer_msan_binary),
    ):
        if sanitizer_binary is None:
            continue
        name = f"libfuzzer-{label}"
        workspace = root / name
        seeds = ensure_dir(workspace / "corpus")
        fuzzers.append(LibFuzzer(seeds, workspace, sanitizer_binary, list(base_args), {}, name))


def setup_semsan_instances(options: EnsembleOptions, fuzzers: list[Fuzzer]) -> None:
    """Add one SemSan instance per secondary binary."""
    primary = options.semsan_primary_binary
    if primary is None:
        return
    for index, secondary in enumerate(options.semsan_secondary_binaries):
        workdir = Path(options.workspace) / f"semsan-{index}"
        seeds = workdir / "seeds"
        try:
            seeds.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            log.warning("could not create %s: %s", seeds, error)
        fuzzers.append(
            SemSanFuzzer(
                primary,
                secondary,
                seeds,
                workdir / "solutions",
                workdir / "pull_corpus",
                options.semsan_comparator,
            )
        )


def setup_native_go_instances(options: EnsembleOptions, fuzzers: list[Fuzzer]) -> None:
    """Add the native Go instance, which cannot run next to other engines."""
    if options.native_go_binary is None:
        return
    if fuzzers:
        raise ValueError("native Go fuzzing is not compatible with other engines")
    fuzzers.append(NativeGoFuzzer(options.native_go_binary, Path(options.workspace) / "native-go"))


def setup_honggfuzz_instances(options: EnsembleOptions, fuzzers: list[Fuzzer]) -> None:
    """Add the honggfuzz instance with one thread per requested core."""
    if options.honggfuzz_binary is None:
        return
    fuzzers.append(
        HonggFuzzer(
            options.honggfuzz_binary,
            Path(options.workspace) / "honggfuzz",
            options.honggfuzz_additional_cores + 1,
        )
    )


def setup_fuzzers(options: EnsembleOptions, cores_requested: int) -> list[Fuzzer]:
    """All fuzz instances the options ask for, in a fixed order."""
    fuzzers: list[Fuzzer] = []
    setup_aflpp_instances(options, cores_requested, fuzzers)
    setup_libfuzzer_instances(options, fuzzers)
    setup_honggfuzz_instances(options, fuzzers)
    setup_semsan_instances(options, fuzzers)
    setup_native_go_instances(options, fuzzers)
    return fuzzers


def _wait(max_duration: Optional[int]) -> None:
    deadline = None if max_duration is None else time.monotonic() + max_duration
    try:
        while deadline is None or time.monotonic() < deadline:
            remaining = 1.0 if deadline is None else deadline - time.monotonic()
            time.sleep(max(0.0, min(1.0, remaining)))
    except KeyboardInterrupt:
        pass


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO)
    options = parse_options(argv)
    log.info("%s", options)

    cores_requested = num_cores_requested(options)
    if cores_requested > _cpu_count():
        print("ensemble-fuzz: can't start more fuzz instances than cores available",
              file=sys.stderr)
        return 1

    try:
        options.workspace = ensure_dir(options.workspace)
        ensure_dir(options.workspace / "corpus")
        ensure_dir(options.workspace / "solutions")
        fuzzers = setup_fuzzers(options, cores_requested)
    except (OSError, ValueError) as error:
        print(f"ensemble-fuzz: {error}", file=sys.stderr)
        return 1

    if not fuzzers:
        print("ensemble-fuzz: at least one base fuzz engine needs to be specified",
              file=sys.stderr)
        return 1

    processes = [fuzzer.start() for fuzzer in fuzzers]
    task = EnsembleTask(fuzzers, options.sync_interval, STATS_INTERVAL, options.workspace)
    task.start()

    _wait(options.max_duration)

    for process in processes:
        process.kill()
    for process in processes:
        process.wait()

    log.info("Done fuzzing, ensembling one last time!")
    task.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())