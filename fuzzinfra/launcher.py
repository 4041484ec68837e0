"""Plan and start an ensemble fuzzing campaign for one harness."""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from fuzzinfra.config import (
    FuzzEngine,
    HarnessConfig,
    ProjectConfig,
    Sanitizer,
    SanitizerKind,
    get_harness_binary,
)

ENSEMBLE_COMMAND = "ensemble-fuzz"
ASAN_OPTIONS = (
    "strict_string_checks=1:detect_invalid_pointer_pairs=2:detect_stack_use_after_return=1:"
    "check_initialization_order=1:strict_init_order=1:abort_on_error=1:symbolize=0"
)

_SANITIZER_FLAGS = {
    SanitizerKind.ADDRESS: "asan",
    SanitizerKind.UNDEFINED: "ubsan",
    SanitizerKind.MEMORY: "msan",
    SanitizerKind.CMPLOG: "cmplog",
    SanitizerKind.SEMSAN: "secondary",
}

_ENGINE_FLAGS = {
    FuzzEngine.LIBFUZZER: "libfuzzer",
    FuzzEngine.AFLPLUSPLUS: "aflpp",
    FuzzEngine.AFLPLUSPLUS_NYX: "aflpp",
    FuzzEngine.HONGGFUZZ: "honggfuzz",
    FuzzEngine.SEMSAN: "semsan",
    FuzzEngine.NATIVE_GO: "native-go",
}


def fuzzer_flag_args(
    engine: FuzzEngine, sanitizer: Sanitizer, harness: str, config: ProjectConfig
) -> list[str]:
    """The ensemble flag and binary path that enable one engine/sanitizer instance."""
    if engine not in _ENGINE_FLAGS:
        raise ValueError(f"can't add engine {engine.value} to ensemble flags")
    if sanitizer.kind is SanitizerKind.ADDRESS and config.has_engine(FuzzEngine.AFLPLUSPLUS_NYX):
        # The plain aflpp flag points at the share dir of the nyx address sanitizer build.
        sanitizer_flag = None
    else:
        sanitizer_flag = _SANITIZER_FLAGS.get(sanitizer.kind)

    engine_flag = _ENGINE_FLAGS[engine]
    if sanitizer_flag is None:
        flag = f"--{engine_flag}-binary"
    else:
        flag = f"--{engine_flag}-{sanitizer_flag}-binary"

    binary = get_harness_binary(engine, sanitizer, harness, config)
    if binary is None:
        raise ValueError(f"no harness binary for {engine.value}/{sanitizer}")
    return [flag, str(binary)]


def _cpu_count() -> int:
    return os.cpu_count() or 1


@dataclass
class FuzzerConfiguration:
    """Assigns available cores to the engines and sanitizers a project was built for."""

    config: ProjectConfig
    harness_config: HarnessConfig
    total_cores: int = field(default_factory=_cpu_count)
    supported_fuzzers: list[tuple[FuzzEngine, Sanitizer]] = field(default_factory=list)
    cores_assigned: int = 0
    extra_args: list[str] = field(default_factory=list)

    def has_available_cores(self) -> bool:
        return self.total_cores > self.cores_assigned

    def try_add_fuzzer(self, engine: FuzzEngine, sanitizer: Sanitizer) -> bool:
        if (
            self.has_available_cores()
            and self.config.has_engine(engine)
            and self.config.has_sanitizer(sanitizer)
        ):
            self.supported_fuzzers.append((engine, sanitizer))
            self.cores_assigned += 1
            return True
        return False

    def configure_native_go(self) -> None:
        if self.try_add_fuzzer(FuzzEngine.NATIVE_GO, Sanitizer.NONE):
            self.cores_assigned = self.total_cores  # native Go takes all remaining cores

    def configure_semsan(self) -> None:
        semsan_sanitizers = [
            s for s in self.config.sanitizers or [] if s.kind is SanitizerKind.SEMSAN
        ]
        if self.try_add_fuzzer(FuzzEngine.SEMSAN, Sanitizer.NONE):
            for sanitizer in semsan_sanitizers:
                self.try_add_fuzzer(FuzzEngine.SEMSAN, sanitizer)

    def configure_libfuzzer(self) -> None:
        if not self.try_add_fuzzer(FuzzEngine.LIBFUZZER, Sanitizer.NONE):
            return

        if self.config.has_sanitizer(Sanitizer.VALUE_PROFILE) and self.has_available_cores():
            self.extra_args.append("--libfuzzer-value-profile")
            self.cores_assigned += 1

        if not self.config.has_engine(FuzzEngine.AFLPLUSPLUS):
            # Sanitizer instances run under libFuzzer only when AFL++ is absent.
            for sanitizer in (Sanitizer.ADDRESS, Sanitizer.UNDEFINED, Sanitizer.MEMORY):
                self.try_add_fuzzer(FuzzEngine.LIBFUZZER, sanitizer)

            if self.has_available_cores():
                self.extra_args.append("--libfuzzer-add-cores")
                self.extra_args.append(str(self.total_cores - self.cores_assigned))

    def configure_aflplusplus(self) -> None:
        if self.try_add_fuzzer(FuzzEngine.AFLPLUSPLUS_NYX, Sanitizer.ADDRESS):
            self.extra_args.extend(["--aflpp-nyx", "--aflpp-occupy"])
            return

        if not self.try_add_fuzzer(FuzzEngine.AFLPLUSPLUS, Sanitizer.NONE):
            return

        for sanitizer in (
            Sanitizer.CMPLOG,
            Sanitizer.ADDRESS,
            Sanitizer.UNDEFINED,
            Sanitizer.MEMORY,
        ):
            self.try_add_fuzzer(FuzzEngine.AFLPLUSPLUS, sanitizer)

        self.extra_args.append("--aflpp-occupy")

    def build_command(
        self, harness: str, duration: float, workspace: Path
    ) -> tuple[list[str], dict[str, str]]:
        """The ensemble command line and the environment variables it adds.

        `duration` is the campaign length in CPU hours.
        """
        argv = [ENSEMBLE_COMMAND]
        for engine, sanitizer in self.supported_fuzzers:
            argv.extend(fuzzer_flag_args(engine, sanitizer, harness, self.config))
        argv.extend(self.extra_args)

        if self.harness_config.dictionary is not None:
            argv.extend(["--dictionary", str(self.harness_config.dictionary)])

        seconds_to_fuzz = (duration / self.total_cores) * 60.0 * 60.0
        argv.extend(
            ["--max-duration", str(max(0, int(seconds_to_fuzz))), "--workspace", str(workspace)]
        )
        return argv, {"ASAN_OPTIONS": ASAN_OPTIONS}


def _load_harness_config(harness: str) -> HarnessConfig:
    try:
        text = Path(f"/{harness}.options.yaml").read_text()
    except OSError:
        text = ""
    try:
        return HarnessConfig.from_yaml(text)
    except ValueError:
        return HarnessConfig()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="fuzzer", description="Start a fuzzing campaign.")
    parser.add_argument("config", type=Path, help="Path to project config")
    parser.add_argument("harness", help="Name of the harness to fuzz")
    parser.add_argument(
        "--duration", type=float, required=True, help="Campaign duration in CPU hours"
    )
    parser.add_argument(
        "--workspace",
        type=Path,
        required=True,
        help="Location for fuzzer data (i.e. corpus, solutions, etc.)",
    )
    args = parser.parse_args(argv)

    try:
        config = ProjectConfig.load(args.config)
        configuration = FuzzerConfiguration(config, _load_harness_config(args.harness))
        configuration.configure_native_go()
        configuration.configure_semsan()
        configuration.configure_libfuzzer()
        configuration.configure_aflplusplus()
        command, extra_env = configuration.build_command(
            args.harness, args.duration, args.workspace
        )
        result = subprocess.run(command, env={**os.environ, **extra_env})
    except (OSError, ValueError) as error:
        print(f"fuzzer: {error}", file=sys.stderr)
        return 1
    return result.returncode if result.returncode >= 0 else 1


if __name__ == "__main__":
    sys.exit(main())