"""Command line options of the ensemble fuzzer."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

DEFAULT_SYNC_INTERVAL = 600
DEFAULT_SEMSAN_COMPARATOR = "equal"


@dataclass
class EnsembleOptions:
    """Which engines and binaries to ensemble, and how."""

    workspace: Path
    # AFL++
    aflpp_binary: Optional[Path] = None
    aflpp_cmplog_binary: Optional[Path] = None
    aflpp_ubsan_binary: Optional[Path] = None
    aflpp_asan_binary: Optional[Path] = None
    aflpp_msan_binary: Optional[Path] = None
    aflpp_occupy: bool = False
    aflpp_nyx: bool = False
    # libFuzzer
    libfuzzer_binary: Optional[Path] = None
    libfuzzer_ubsan_binary: Optional[Path] = None
    libfuzzer_asan_binary: Optional[Path] = None
    libfuzzer_msan_binary: Optional[Path] = None
    libfuzzer_value_profile: bool = False
    libfuzzer_additional_cores: int = 0
    # SemSan
    semsan_primary_binary: Optional[Path] = None
    semsan_secondary_binaries: list[Path] = field(default_factory=list)
    semsan_comparator: str = DEFAULT_SEMSAN_COMPARATOR
    # Native Go
    native_go_binary: Optional[Path] = None
    # Honggfuzz
    honggfuzz_binary: Optional[Path] = None
    honggfuzz_additional_cores: int = 0

    sync_interval: int = DEFAULT_SYNC_INTERVAL
    max_duration: Optional[int] = None
    dictionary: Optional[Path] = None


def _non_negative(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {text!r}")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ensemble-fuzz", description="Run several fuzz engines on one harness together."
    )
    add = parser.add_argument

    add("--aflpp-binary", dest="aflpp_binary", type=Path, help="Specify a afl++ binary")
    add("--aflpp-cmplog-binary", dest="aflpp_cmplog_binary", type=Path,
        help="Specify a afl++ cmplog binary")
    add("--aflpp-ubsan-binary", dest="aflpp_ubsan_binary", type=Path,
        help="Specify a afl++ ubsan binary")
    add("--aflpp-asan-binary", dest="aflpp_asan_binary", type=Path,
        help="Specify a afl++ asan binary")
    add("--aflpp-msan-binary", dest="aflpp_msan_binary", type=Path,
        help="Specify a afl++ msan binary")
    add("--aflpp-occupy", dest="aflpp_occupy", action="store_true",
        help="Occupy left over CPUs with afl++ instances")
    add("--aflpp-nyx", dest="aflpp_nyx", action="store_true", help="Enable nyx mode for afl++")

    add("--libfuzzer-binary", dest="libfuzzer_binary", type=Path,
        help="Specify a libFuzzer binary")
    add("--libfuzzer-ubsan-binary", dest="libfuzzer_ubsan_binary", type=Path,
        help="Specify a libFuzzer ubsan binary")
    add("--libfuzzer-asan-binary", dest="libfuzzer_asan_binary", type=Path,
        help="Specify a libFuzzer asan binary")
    add("--libfuzzer-msan-binary", dest="libfuzzer_msan_binary", type=Path,
        help="Specify a libFuzzer msan binary")
    add("--libfuzzer-value-profile", dest="libfuzzer_value_profile", action="store_true",
        help="Ensemble a libFuzzer instance configured with -use_value_profile")
    add("--libfuzzer-add-cores", dest="libfuzzer_additional_cores", type=_non_negative,
        default=0, help="Number of additional libFuzzer cores")

    add("--semsan-binary", dest="semsan_primary_binary", type=Path,
        help="Specify the binary for the primary SemSan harness")
    add("--semsan-secondary-binary", dest="semsan_secondary_binaries", type=Path,
        action="append", default=None,
        help="Specify one or more binaries for the secondary SemSan harnesses")
    add("--semsan-comparator", dest="semsan_comparator", default=DEFAULT_SEMSAN_COMPARATOR,
        help="Specify the comparator used for semsan instances")

    add("--native-go-binary", dest="native_go_binary", type=Path,
        help="Specify the binary for native go fuzzing")

    add("--honggfuzz-binary", dest="honggfuzz_binary", type=Path,
        help="Specify a honggfuzz binary")
    add("--honggfuzz-add-cores", dest="honggfuzz_additional_cores", type=_non_negative,
        default=0, help="Number of additional honggfuzz cores")

    add("--sync-interval", dest="sync_interval", type=_non_negative,
        default=DEFAULT_SYNC_INTERVAL, help="Time between corpus syncs in seconds")
    add("--max-duration", dest="max_duration", type=_non_negative,
        help="Maximum fuzzing duration in seconds")
    add("--dictionary", dest="dictionary", type=Path,
        help="Dictionary file to be used by the fuzzers")
    add("--workspace", dest="workspace", type=Path, required=True, help="Workspace folder")
    return parser


def parse_options(argv: Optional[Sequence[str]] = None) -> EnsembleOptions:
    """Parse ensemble options; exits with a usage message on invalid input."""
    parser = _build_parser()
    namespace = parser.parse_args(argv)
    values = vars(namespace)
    values["semsan_secondary_binaries"] = values["semsan_secondary_binaries"] or []
    if values["semsan_secondary_binaries"] and values["semsan_primary_binary"] is None:
        parser.error("--semsan-secondary-binary requires --semsan-binary")
    return EnsembleOptions(**values)