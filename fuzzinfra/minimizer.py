"""Corpus minimization with every engine a project was built for."""

from __future__ import annotations

import argparse
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Optional, Sequence

from fuzzinfra.config import (
    AflTool,
    FuzzEngine,
    ProjectConfig,
    Sanitizer,
    get_afl_tool_path,
    get_harness_binary,
)


def _run(command: Sequence[object]) -> bool:
    return subprocess.run([str(part) for part in command]).returncode == 0


def _harness_binary(
    engine: FuzzEngine, sanitizer: Sanitizer, harness: str, config: ProjectConfig, missing: str
) -> Path:
    binary = get_harness_binary(engine, sanitizer, harness, config)
    if binary is None:
        raise FileNotFoundError(missing)
    return binary


def minimize_with_afl_nyx(
    input_corpus: Path, output_corpus: Path, harness: str, config: ProjectConfig
) -> bool:
    if not config.has_engine(FuzzEngine.AFLPLUSPLUS_NYX) or not config.has_sanitizer(
        Sanitizer.ADDRESS
    ):
        return False
    binary = _harness_binary(
        FuzzEngine.AFLPLUSPLUS_NYX, Sanitizer.ADDRESS, harness, config, "Nyx share dir not found"
    )
    return _run(
        [get_afl_tool_path(AflTool.AFL_CMIN), "-A", "-X", "-i", input_corpus,
         "-o", output_corpus, "--", binary]
    )


def minimize_with_afl(
    input_corpus: Path, output_corpus: Path, harness: str, config: ProjectConfig
) -> bool:
    if not config.has_engine(FuzzEngine.AFLPLUSPLUS) or not config.has_sanitizer(Sanitizer.NONE):
        return False
    binary = _harness_binary(
        FuzzEngine.AFLPLUSPLUS, Sanitizer.NONE, harness, config, "Harness binary not found"
    )
    return _run(
        [get_afl_tool_path(AflTool.AFL_CMIN), "-A", "-i", input_corpus,
         "-o", output_corpus, "--", binary]
    )


def minimize_with_libfuzzer(
    input_corpus: Path, output_corpus: Path, harness: str, config: ProjectConfig
) -> bool:
    if not config.has_engine(FuzzEngine.LIBFUZZER) or not config.has_sanitizer(Sanitizer.NONE):
        return False
    binary = _harness_binary(
        FuzzEngine.LIBFUZZER, Sanitizer.NONE, harness, config, "Harness binary not found"
    )
    return _run(
        [binary, "-rss_limit_mb=8000", "-set_cover_merge=1", "-shuffle=0", "-prefer_small=1",
         "-use_value_profile=1", output_corpus, input_corpus]
    )


def minimize_with_honggfuzz(
    input_corpus: Path, output_corpus: Path, harness: str, config: ProjectConfig
) -> bool:
    if (
        not config.has_engine(FuzzEngine.HONGGFUZZ)
        or not config.has_sanitizer(Sanitizer.NONE)
        or "FUZZOR_HONGGFUZZ_NO_MINIMIZE" in os.environ
    ):
        return False
    binary = _harness_binary(
        FuzzEngine.HONGGFUZZ, Sanitizer.NONE, harness, config, "Harness binary not found"
    )
    return _run(
        ["honggfuzz", "--input", input_corpus, "--output", output_corpus,
         "--minimize", "--", binary]
    )


def copy_for_native_go(input_corpus: Path, output_corpus: Path, config: ProjectConfig) -> bool:
    """Copy the corpus unchanged; native Go fuzzing has no minimizer."""
    if not config.has_engine(FuzzEngine.NATIVE_GO) or not config.has_sanitizer(Sanitizer.NONE):
        return False
    source = Path(input_corpus)
    destination = Path(output_corpus)
    if destination.is_dir():
        destination = destination / source.name
    try:
        if source.is_dir():
            shutil.copytree(source, destination)
        else:
            shutil.copy2(source, destination)
    except OSError:
        return False
    return True


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="minimizer",
        description="Minimize a corpus with every engine the project was built for.",
    )
    parser.add_argument("config", type=Path, help="Path to project config file")
    parser.add_argument("input_corpus", type=Path, help="Input corpus to be minimized")
    parser.add_argument("output_corpus", type=Path, help="Path to output corpus")
    parser.add_argument("harness", help="Harness name")
    args = parser.parse_args(argv)

    try:
        config = ProjectConfig.load(args.config)
        results = [
            minimize_with_afl(args.input_corpus, args.output_corpus, args.harness, config),
            minimize_with_afl_nyx(args.input_corpus, args.output_corpus, args.harness, config),
            minimize_with_libfuzzer(args.input_corpus, args.output_corpus, args.harness, config),
            minimize_with_honggfuzz(args.input_corpus, args.output_corpus, args.harness, config),
            copy_for_native_go(args.input_corpus, args.output_corpus, config),
        ]
    except (OSError, ValueError) as error:
        print(f"minimizer: {error}", file=sys.stderr)
        return 1

    return 0 if any(results) else 1


if __name__ == "__main__":
    sys.exit(main())