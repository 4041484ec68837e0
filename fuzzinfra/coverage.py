"""Coverage reports for a corpus run through a coverage-instrumented harness."""

from __future__ import annotations

import argparse
import json
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

from fuzzinfra.config import FuzzEngine, ProjectConfig, Sanitizer, get_harness_binary

PROFRAW_FILE = "default.profraw"
PROFDATA_FILE = "default.profdata"
COVERAGE_SUMMARY_FILE = "coverage-summary.json"
COVERED_FUNCTIONS_FILE = "/workdir/covered-functions.txt"
COVERAGE_REPORT_DIR = "/workdir/coverage_report"


def _split_prefix(mangled: str) -> tuple[Optional[str], str]:
    # llvm-cov prefixes internal-linkage symbols with "<file>:_Z...".
    prefix, sep, rest = mangled.partition(":")
    if sep and rest.startswith("_Z"):
        return prefix, rest
    return None, mangled


def _demangler() -> Optional[str]:
    return shutil.which("llvm-cxxfilt") or shutil.which("c++filt")


def _demangle_all(symbols: Sequence[str]) -> list[str]:
    """Demangle Itanium symbols; anything that cannot be demangled is kept as is."""
    mangled = list(dict.fromkeys(s for s in symbols if s.startswith("_Z")))
    tool = _demangler()
    if not mangled or tool is None:
        return list(symbols)
    try:
        result = subprocess.run(
            [tool], input="\n".join(mangled) + "\n", capture_output=True, text=True, check=True
        )
    except (OSError, subprocess.SubprocessError):
        return list(symbols)
    lines = result.stdout.splitlines()
    if len(lines) != len(mangled):
        return list(symbols)
    table = {raw: demangled or raw for raw, demangled in zip(mangled, lines)}
    return [table.get(symbol, symbol) for symbol in symbols]


def _rejoin(prefix: Optional[str], name: str) -> str:
    return name if prefix is None else f"{prefix}:{name}"


def demangle_name(mangled: str) -> str:
    prefix, raw = _split_prefix(mangled)
    return _rejoin(prefix, _demangle_all([raw])[0])


def _count(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


def covered_functions(export: Any) -> list[str]:
    """Sorted, de-duplicated, demangled names of functions executed at least once."""
    try:
        functions = export["data"][0]["functions"]
    except (KeyError, IndexError, TypeError):
        return []
    if not isinstance(functions, list):
        return []
    names = [
        function["name"]
        for function in functions
        if isinstance(function, dict)
        and _count(function.get("count")) > 0
        and isinstance(function.get("name"), str)
    ]
    parts = [_split_prefix(name) for name in names]
    demangled = _demangle_all([raw for _, raw in parts])
    return sorted({_rejoin(prefix, name) for (prefix, _), name in zip(parts, demangled)})


@dataclass
class CoverageReporter:
    binary_path: Path
    profraw_file: Path = Path(PROFRAW_FILE)
    profdata_file: Path = Path(PROFDATA_FILE)
    summary_file: Path = Path(COVERAGE_SUMMARY_FILE)
    covered_functions_file: Path = Path(COVERED_FUNCTIONS_FILE)
    report_dir: Path = Path(COVERAGE_REPORT_DIR)

    def _instr_profile(self) -> str:
        return f"-instr-profile={self.profdata_file}"

    def run_coverage_binary(self, corpus_path: str) -> None:
        if subprocess.run([str(self.binary_path), "-runs=1", str(corpus_path)]).returncode != 0:
            raise OSError("Coverage binary execution failed")

    def merge_profdata(self) -> None:
        command = ["llvm-profdata", "merge", "-sparse", str(self.profraw_file),
                   "-o", str(self.profdata_file)]
        if subprocess.run(command).returncode != 0:
            raise OSError("Failed to merge profdata")

    def export_coverage_summary(self) -> None:
        command = ["llvm-cov", "export", str(self.binary_path), "-summary-only",
                   self._instr_profile()]
        with open(self.summary_file, "wb") as summary:
            if subprocess.run(command, stdout=summary).returncode != 0:
                raise OSError("Failed to export coverage summary")

    def export_covered_functions(self) -> None:
        command = ["llvm-cov", "export", str(self.binary_path), self._instr_profile()]
        result = subprocess.run(command, stdout=subprocess.PIPE)
        if result.returncode != 0:
            raise OSError("Failed to export full coverage data")
        try:
            export = json.loads(result.stdout)
        except ValueError as error:
            raise OSError(f"Invalid coverage export: {error}") from error
        Path(self.covered_functions_file).write_text("\n".join(covered_functions(export)))

    def generate_html_report(self) -> None:
        command = [
            "llvm-cov", "show", str(self.binary_path), self._instr_profile(),
            "-format=html", "-show-directory-coverage", "-show-branches=count",
            f"-output-dir={self.report_dir}",
        ]
        if subprocess.run(command).returncode != 0:
            raise OSError("Failed to generate HTML report")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="coverage-reporter", description="Report coverage for a harness corpus."
    )
    parser.add_argument("config", type=Path, help="Path to project config")
    parser.add_argument("corpus", help="Corpus to report coverage for")
    parser.add_argument("harness", help="Name of the harness to report coverage for")
    args = parser.parse_args(argv)

    try:
        config = ProjectConfig.load(args.config)
        binary = get_harness_binary(FuzzEngine.NONE, Sanitizer.COVERAGE, args.harness, config)
        if binary is None:
            raise OSError("Failed to get harness binary")
        reporter = CoverageReporter(binary)
        reporter.run_coverage_binary(args.corpus)
        reporter.merge_profdata()
        reporter.export_coverage_summary()
        reporter.export_covered_functions()
        reporter.generate_html_report()
    except (OSError, ValueError) as error:
        print(f"coverage-reporter: {error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())