"""Build a project's harnesses for every configured engine and sanitizer."""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from fuzzinfra.config import (
    FuzzEngine,
    Language,
    ProjectConfig,
    Sanitizer,
    SanitizerKind,
    SemSanBuild,
    get_harness_dir,
)

AFL_CLANG_CC = "afl-clang-fast"
AFL_CLANG_CXX = "afl-clang-fast++"
AFL_GCC_CC = "afl-gcc-fast"
AFL_GCC_CXX = "afl-g++-fast"
DEFAULT_CCACHE_DIR = "/ccache/"

_UBSAN_CHECKS = (
    "array-bounds,bool,builtin,enum,integer-divide-by-zero,null,return,"
    "returns-nonnull-attribute,shift,signed-integer-overflow,unsigned-integer-overflow,"
    "unreachable,vla-bound,vptr"
)
SANITIZE_UNDEFINED_LD = f"-fsanitize={_UBSAN_CHECKS}"
SANITIZE_UNDEFINED = f"-fsanitize={_UBSAN_CHECKS} -O2 -g"
SANITIZE_UNDEFINED_FUZZER = f"-fsanitize=fuzzer,{_UBSAN_CHECKS}"
SANITIZE_UNDEFINED_FUZZER_NO_LINK = f"-fsanitize=fuzzer-no-link,{_UBSAN_CHECKS} -O2 -g"

_MSAN_CFLAGS = (
    "-fsanitize=memory,fuzzer-no-link -fsanitize-memory-track-origins=2 "
    "-fno-omit-frame-pointer -g -O1 -fno-optimize-sibling-calls"
)
_MSAN_CXXFLAGS = (
    _MSAN_CFLAGS
    + " -nostdinc++ -nostdlib++ -isystem /libcxx_msan/include/c++/v1 -L/libcxx_msan/lib"
    " -Wl,-rpath,/libcxx_msan/lib -lc++ -lc++abi -lpthread -Wno-unused-command-line-argument"
)
_COVERAGE_FLAGS = "-fsanitize=fuzzer-no-link -fprofile-instr-generate -fcoverage-mapping -O0"


class BuildError(Exception):
    """A build script exited unsuccessfully."""


@dataclass(frozen=True)
class BuildEnv:
    """Compilers and environment variables for one engine/sanitizer build."""

    cc: str
    cxx: str
    variables: tuple[tuple[str, str], ...] = ()

    def envs(self) -> dict[str, str]:
        envs = {"CC": self.cc, "CXX": self.cxx}
        envs.update(self.variables)
        envs.setdefault("CCACHE_DIR", DEFAULT_CCACHE_DIR)
        return envs


def _opt_flags(level: str) -> tuple[tuple[str, str], ...]:
    return (("CFLAGS", level), ("CXXFLAGS", level))


_SEMSAN_BUILD_ENVS: dict[SemSanBuild, BuildEnv] = {
    SemSanBuild.GCC_O0: BuildEnv(AFL_GCC_CC, AFL_GCC_CXX, _opt_flags("-O0")),
    SemSanBuild.GCC_O1: BuildEnv(AFL_GCC_CC, AFL_GCC_CXX, _opt_flags("-O1")),
    SemSanBuild.GCC_O2: BuildEnv(AFL_GCC_CC, AFL_GCC_CXX, _opt_flags("-O2")),
    SemSanBuild.CLANG_O0: BuildEnv(AFL_CLANG_CC, AFL_CLANG_CXX, _opt_flags("-O0")),
    SemSanBuild.CLANG_O1: BuildEnv(AFL_CLANG_CC, AFL_CLANG_CXX, _opt_flags("-O1")),
    SemSanBuild.CLANG_O2: BuildEnv(AFL_CLANG_CC, AFL_CLANG_CXX, _opt_flags("-O2")),
}

_AFL_PLAIN = BuildEnv(AFL_CLANG_CC, AFL_CLANG_CXX)
_AFL_ASAN = BuildEnv(
    AFL_CLANG_CC,
    AFL_CLANG_CXX,
    (("AFL_USE_ASAN", "1"), ("CCACHE_DIR", "/ccache_asan/"), ("CFLAGS", "-O2"),
     ("CXXFLAGS", "-O2")),
)

_BUILD_ENVS: dict[tuple[FuzzEngine, SanitizerKind], BuildEnv] = {
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.NONE): _AFL_PLAIN,
    (FuzzEngine.AFLPLUSPLUS_NYX, SanitizerKind.NONE): _AFL_PLAIN,
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.CMPLOG): BuildEnv(
        AFL_CLANG_CC,
        AFL_CLANG_CXX,
        (("AFL_LLVM_CMPLOG", "1"), ("CCACHE_DIR", "/ccache_cmplog/"), ("CFLAGS", "-O2"),
         ("CXXFLAGS", "-O2")),
    ),
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.UNDEFINED): BuildEnv(
        AFL_CLANG_CC,
        AFL_CLANG_CXX,
        (("LIB_FUZZING_ENGINE", SANITIZE_UNDEFINED_LD), ("CFLAGS", SANITIZE_UNDEFINED),
         ("CXXFLAGS", SANITIZE_UNDEFINED)),
    ),
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.ADDRESS): _AFL_ASAN,
    (FuzzEngine.AFLPLUSPLUS_NYX, SanitizerKind.ADDRESS): _AFL_ASAN,
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.MEMORY): BuildEnv(
        AFL_CLANG_CC,
        AFL_CLANG_CXX,
        (("CFLAGS", _MSAN_CFLAGS), ("CXXFLAGS", _MSAN_CXXFLAGS)),
    ),
    (FuzzEngine.LIBFUZZER, SanitizerKind.NONE): BuildEnv(
        "clang",
        "clang++",
        (("LIB_FUZZING_ENGINE", "-fsanitize=fuzzer"), ("CFLAGS", "-O2 -fsanitize=fuzzer-no-link"),
         ("CXXFLAGS", "-O2 -fsanitize=fuzzer-no-link")),
    ),
    (FuzzEngine.LIBFUZZER, SanitizerKind.UNDEFINED): BuildEnv(
        "clang",
        "clang++",
        (("LIB_FUZZING_ENGINE", SANITIZE_UNDEFINED_FUZZER),
         ("CFLAGS", SANITIZE_UNDEFINED_FUZZER_NO_LINK),
         ("CXXFLAGS", SANITIZE_UNDEFINED_FUZZER_NO_LINK)),
    ),
    (FuzzEngine.LIBFUZZER, SanitizerKind.ADDRESS): BuildEnv(
        "clang",
        "clang++",
        (("LIB_FUZZING_ENGINE", "-fsanitize=fuzzer,address"),
         ("CFLAGS", "-O2 -fsanitize=fuzzer-no-link,address"),
         ("CXXFLAGS", "-O2 -fsanitize=fuzzer-no-link,address")),
    ),
    (FuzzEngine.LIBFUZZER, SanitizerKind.MEMORY): BuildEnv(
        "clang",
        "clang++",
        (("LIB_FUZZING_ENGINE", "-fsanitize=fuzzer,memory"), ("CFLAGS", _MSAN_CFLAGS),
         ("CXXFLAGS", _MSAN_CXXFLAGS)),
    ),
    (FuzzEngine.HONGGFUZZ, SanitizerKind.NONE): BuildEnv(
        "hfuzz-clang",
        "hfuzz-clang++",
        (("LIB_FUZZING_ENGINE", ""), ("CFLAGS", "-O2"), ("CXXFLAGS", "-O2")),
    ),
    (FuzzEngine.NONE, SanitizerKind.COVERAGE): BuildEnv(
        "clang",
        "clang++",
        (("CFLAGS", _COVERAGE_FLAGS), ("CXXFLAGS", _COVERAGE_FLAGS),
         ("LIB_FUZZING_ENGINE", "-fsanitize=fuzzer")),
    ),
}


def build_env_for(engine: FuzzEngine, sanitizer: Sanitizer) -> Optional[BuildEnv]:
    """Build environment for a C/C++ build, or None if the combination is not built."""
    if engine is FuzzEngine.SEMSAN:
        if sanitizer.build is not None and sanitizer.build in _SEMSAN_BUILD_ENVS:
            return _SEMSAN_BUILD_ENVS[sanitizer.build]
        if sanitizer.kind in (SanitizerKind.SEMSAN, SanitizerKind.NONE):
            return _AFL_PLAIN
        return None
    return _BUILD_ENVS.get((engine, sanitizer.kind))


def _run_build_script(script: Path, output_dir: Path, envs: Mapping[str, str]) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    env = {**os.environ, **envs, "OUT": str(output_dir)}
    result = subprocess.run([str(script)], env=env)
    if result.returncode != 0:
        raise BuildError(f"build script {script} failed with exit code {result.returncode}")


def build_cpp(
    script: Path, output: Path, engine: FuzzEngine, sanitizer: Sanitizer, config: ProjectConfig
) -> None:
    env = build_env_for(engine, sanitizer)
    if env is None:
        return
    harness_dir = get_harness_dir(engine, sanitizer, config)
    if harness_dir is None:
        raise ValueError(f"no harness directory for {engine.value}/{sanitizer}")

    envs = env.envs()
    envs["FUZZING_ENGINE"] = harness_dir
    if engine is FuzzEngine.SEMSAN and sanitizer.build is not None:
        envs["SEMSAN_BUILD"] = sanitizer.build.value

    _run_build_script(Path(script), Path(output) / harness_dir, envs)


def _build_simple(
    script: Path, output: Path, engine: FuzzEngine, sanitizer: Sanitizer, config: ProjectConfig
) -> None:
    harness_dir = get_harness_dir(engine, sanitizer, config)
    if harness_dir is None:
        return
    _run_build_script(Path(script), Path(output) / harness_dir, {"FUZZING_ENGINE": harness_dir})


def build_rust(
    script: Path, output: Path, engine: FuzzEngine, sanitizer: Sanitizer, config: ProjectConfig
) -> None:
    _build_simple(script, output, engine, sanitizer, config)


def build_go(
    script: Path, output: Path, engine: FuzzEngine, sanitizer: Sanitizer, config: ProjectConfig
) -> None:
    _build_simple(script, output, engine, sanitizer, config)


_BUILDERS = {
    Language.C: build_cpp,
    Language.CPP: build_cpp,
    Language.RUST: build_rust,
    Language.GO: build_go,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="builder", description="Build harnesses for all configured engines and sanitizers."
    )
    parser.add_argument("config", type=Path, help="Path to project config")
    parser.add_argument("build_script", type=Path, help="Path to project build script")
    parser.add_argument("output", type=Path, help="Path to build destination")
    args = parser.parse_args(argv)

    try:
        config = ProjectConfig.load(args.config)
        if config.engines is None or config.sanitizers is None:
            raise ValueError("project config lists no engines or no sanitizers")
        build = _BUILDERS[config.language]
        for engine in config.engines:
            for sanitizer in config.sanitizers:
                build(args.build_script, args.output, engine, sanitizer, config)
    except BuildError as error:
        print(f"builder: {error}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as error:
        print(f"builder: {error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())