"""Project configuration, fuzzing statistics and harness locations."""

from __future__ import annotations

import base64
import hashlib
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ClassVar, Optional, TypeVar

import yaml

HARNESS_ROOT = "/workdir/out"

_T = TypeVar("_T")


class Language(Enum):
    C = "C"
    CPP = "Cpp"
    RUST = "Rust"
    GO = "Go"


class FuzzEngine(Enum):
    LIBFUZZER = "LibFuzzer"
    AFLPLUSPLUS = "AflPlusPlus"
    AFLPLUSPLUS_NYX = "AflPlusPlusNyx"
    HONGGFUZZ = "HonggFuzz"
    SEMSAN = "SemSan"
    NATIVE_GO = "NativeGo"
    NONE = "None"


class SemSanBuild(Enum):
    GCC_O0 = "GccO0"
    GCC_O1 = "GccO1"
    GCC_O2 = "GccO2"
    CLANG_O0 = "ClangO0"
    CLANG_O1 = "ClangO1"
    CLANG_O2 = "ClangO2"
    CUSTOM0 = "Custom0"
    CUSTOM1 = "Custom1"
    CUSTOM2 = "Custom2"
    CUSTOM3 = "Custom3"
    CUSTOM4 = "Custom4"
    CUSTOM5 = "Custom5"
    CUSTOM6 = "Custom6"
    CUSTOM7 = "Custom7"
    CUSTOM8 = "Custom8"
    CUSTOM9 = "Custom9"
    CUSTOM10 = "Custom10"
    CUSTOM11 = "Custom11"
    CUSTOM12 = "Custom12"
    CUSTOM13 = "Custom13"
    CUSTOM14 = "Custom14"
    CUSTOM15 = "Custom15"


class SanitizerKind(Enum):
    UNDEFINED = "Undefined"
    ADDRESS = "Address"
    MEMORY = "Memory"
    COVERAGE = "Coverage"  # only with FuzzEngine.NONE
    CMPLOG = "CmpLog"  # only with FuzzEngine.AFLPLUSPLUS
    VALUE_PROFILE = "ValueProfile"  # only with FuzzEngine.LIBFUZZER
    SEMSAN = "SemSan"  # carries a SemSanBuild
    NONE = "None"


@dataclass(frozen=True)
class Sanitizer:
    """A sanitizer; SemSan sanitizers carry the build variant they refer to."""

    kind: SanitizerKind
    build: Optional[SemSanBuild] = None

    NONE: ClassVar[Sanitizer]
    UNDEFINED: ClassVar[Sanitizer]
    ADDRESS: ClassVar[Sanitizer]
    MEMORY: ClassVar[Sanitizer]
    COVERAGE: ClassVar[Sanitizer]
    CMPLOG: ClassVar[Sanitizer]
    VALUE_PROFILE: ClassVar[Sanitizer]

    def __post_init__(self) -> None:
        if (self.kind is SanitizerKind.SEMSAN) != (self.build is not None):
            raise ValueError(
                "a build variant is required for SemSan sanitizers and only for them"
            )

    @classmethod
    def semsan(cls, build: SemSanBuild | str) -> Sanitizer:
        return cls(SanitizerKind.SEMSAN, SemSanBuild(build))

    @classmethod
    def parse(cls, value: Any) -> Sanitizer:
        """Read a sanitizer from its configuration form: a name or {"SemSan": build}."""
        if isinstance(value, Sanitizer):
            return value
        if isinstance(value, str):
            kind = SanitizerKind(value)
            if kind is SanitizerKind.SEMSAN:
                raise ValueError("SemSan sanitizer needs a build variant")
            return cls(kind)
        if isinstance(value, dict) and len(value) == 1:
            ((key, build),) = value.items()
            if key != SanitizerKind.SEMSAN.value:
                raise ValueError(f"unknown sanitizer variant: {key!r}")
            return cls.semsan(build)
        raise ValueError(f"invalid sanitizer: {value!r}")

    def to_yaml_value(self) -> Any:
        if self.build is not None:
            return {self.kind.value: self.build.value}
        return self.kind.value

    def __str__(self) -> str:
        if self.build is not None:
            return f"{self.kind.value}({self.build.value})"
        return self.kind.value


Sanitizer.NONE = Sanitizer(SanitizerKind.NONE)
Sanitizer.UNDEFINED = Sanitizer(SanitizerKind.UNDEFINED)
Sanitizer.ADDRESS = Sanitizer(SanitizerKind.ADDRESS)
Sanitizer.MEMORY = Sanitizer(SanitizerKind.MEMORY)
Sanitizer.COVERAGE = Sanitizer(SanitizerKind.COVERAGE)
Sanitizer.CMPLOG = Sanitizer(SanitizerKind.CMPLOG)
Sanitizer.VALUE_PROFILE = Sanitizer(SanitizerKind.VALUE_PROFILE)


class CpuArchitecture(Enum):
    AMD64 = "Amd64"
    ARM64 = "Arm64"


class _TaggedLoader(yaml.SafeLoader):
    """Safe loader that reads local tags such as `!SemSan GccO0` as one-key maps."""


def _construct_tagged(loader: yaml.SafeLoader, suffix: str, node: yaml.Node) -> Any:
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return {suffix: value}


_TaggedLoader.add_multi_constructor("!", _construct_tagged)


def _load_yaml(text: str) -> Any:
    try:
        return yaml.load(text, Loader=_TaggedLoader)
    except yaml.YAMLError as error:
        raise ValueError(f"invalid YAML: {error}") from error


def _required_str(data: dict, key: str) -> str:
    if key not in data:
        raise ValueError(f"missing field `{key}`")
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


def _optional_list(data: dict, key: str, parse: Callable[[Any], _T]) -> Optional[list[_T]]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValueError(f"field `{key}` must be a list")
    return [parse(item) for item in value]


def _as_str(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


@dataclass
class ProjectConfig:
    name: str
    owner: str
    repo: str
    language: Language
    ccs: list[str]
    branch: Optional[str] = None
    pr_number: Optional[str] = None
    engines: Optional[list[FuzzEngine]] = None
    sanitizers: Optional[list[Sanitizer]] = None
    architectures: Optional[list[CpuArchitecture]] = None
    fuzz_env_var: Optional[str] = None
    no_stack_limit_harnesses: Optional[list[str]] = None

    @classmethod
    def from_dict(cls, data: Any) -> ProjectConfig:
        if not isinstance(data, dict):
            raise ValueError("project config must be a mapping")
        if "language" not in data:
            raise ValueError("missing field `language`")
        ccs = _optional_list(data, "ccs", _as_str)
        if ccs is None:
            raise ValueError("missing field `ccs`")
        return cls(
            name=_required_str(data, "name"),
            owner=_required_str(data, "owner"),
            repo=_required_str(data, "repo"),
            language=Language(data["language"]),
            ccs=ccs,
            branch=_optional_str(data, "branch"),
            pr_number=_optional_str(data, "pr_number"),
            engines=_optional_list(data, "engines", FuzzEngine),
            sanitizers=_optional_list(data, "sanitizers", Sanitizer.parse),
            architectures=_optional_list(data, "architectures", CpuArchitecture),
            fuzz_env_var=_optional_str(data, "fuzz_env_var"),
            no_stack_limit_harnesses=_optional_list(data, "no_stack_limit_harnesses", _as_str),
        )

    @classmethod
    def from_yaml(cls, text: str) -> ProjectConfig:
        return cls.from_dict(_load_yaml(text))

    @classmethod
    def load(cls, path: str | os.PathLike) -> ProjectConfig:
        return cls.from_yaml(Path(path).read_text())

    def has_sanitizer(self, sanitizer: Sanitizer) -> bool:
        return self.sanitizers is not None and sanitizer in self.sanitizers

    def has_engine(self, engine: FuzzEngine) -> bool:
        return self.engines is not None and engine in self.engines

    def harness_has_no_stack_limit(self, harness_name: str) -> bool:
        return self.no_stack_limit_harnesses is not None and any(
            harness == harness_name for harness in self.no_stack_limit_harnesses
        )


@dataclass
class HarnessConfig:
    dictionary: Optional[Path] = None

    @classmethod
    def from_yaml(cls, text: str) -> HarnessConfig:
        data = _load_yaml(text)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("harness config must be a mapping")
        dictionary = _optional_str(data, "dictionary")
        return cls(dictionary=Path(dictionary) if dictionary is not None else None)


@dataclass
class FuzzerStats:
    execs_per_sec: float = 0.0
    stability: Optional[float] = None
    corpus_count: int = 0
    saved_crashes: int = 0
    saved_hangs: int = 0

    def has_solutions(self) -> bool:
        return self.saved_hangs + self.saved_crashes > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "execs_per_sec": self.execs_per_sec,
            "stability": self.stability,
            "corpus_count": self.corpus_count,
            "saved_crashes": self.saved_crashes,
            "saved_hangs": self.saved_hangs,
        }


class SolutionCause(Enum):
    ASAN_CRASH = "AsanCrash"
    UBSAN_CRASH = "UbsanCrash"
    MSAN_CRASH = "MsanCrash"
    CRASH = "Crash"
    SIGNAL_CRASH = "SignalCrash"
    TIMEOUT = "Timeout"
    DIFFERENTIAL = "Differential"


@dataclass
class ReproducedSolution:
    cause: SolutionCause
    input: bytes
    """Input bytes that trigger the solution."""
    trace: bytes
    """Stack trace for crashes or a flamegraph SVG for timeouts."""

    def name(self) -> str:
        digest = hashlib.sha256(self.input).hexdigest()
        return f"fuzzor-{int(time.time())}-{self.cause.value}-{digest}"

    def to_yaml(self) -> str:
        return yaml.safe_dump(
            {
                "cause": self.cause.value,
                "input": base64.b64encode(self.input).decode("ascii"),
                "trace": base64.b64encode(self.trace).decode("ascii"),
            },
            sort_keys=False,
        )

    @classmethod
    def from_yaml(cls, text: str) -> ReproducedSolution:
        data = _load_yaml(text)
        if not isinstance(data, dict):
            raise ValueError("solution must be a mapping")
        try:
            return cls(
                cause=SolutionCause(data["cause"]),
                input=base64.b64decode(_as_str(data["input"]), validate=True),
                trace=base64.b64decode(_as_str(data["trace"]), validate=True),
            )
        except KeyError as error:
            raise ValueError(f"missing field `{error.args[0]}`") from error


@dataclass
class CampaignStartupParams:
    """Startup parameters stored once at the beginning of each campaign."""

    num_cpus: int
    duration_secs: int
    engines: Optional[list[FuzzEngine]]
    sanitizers: Optional[list[Sanitizer]]
    commit_hash: str


class AflTool(Enum):
    AFL_FUZZ = "afl-fuzz"
    AFL_CMIN = "afl-cmin"
    AFL_PLOT = "afl-plot"
    AFL_WHATSUP = "afl-whatsup"
    AFL_TMIN = "afl-tmin"
    AFL_ADDSEEDS = "afl-addseeds"
    AFL_SHOWMAP = "afl-showmap"

    def __str__(self) -> str:
        return self.value


def format_image_name(config: ProjectConfig) -> str:
    return f"fuzzor-{config.name}"


_HARNESS_DIRS: dict[tuple[FuzzEngine, SanitizerKind], str] = {
    (FuzzEngine.LIBFUZZER, SanitizerKind.NONE): "libfuzzer",
    (FuzzEngine.LIBFUZZER, SanitizerKind.UNDEFINED): "libfuzzer_ubsan",
    (FuzzEngine.LIBFUZZER, SanitizerKind.ADDRESS): "libfuzzer_asan",
    (FuzzEngine.LIBFUZZER, SanitizerKind.MEMORY): "libfuzzer_msan",
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.NONE): "aflpp",
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.UNDEFINED): "aflpp_ubsan",
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.ADDRESS): "aflpp_asan",
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.MEMORY): "aflpp_msan",
    (FuzzEngine.AFLPLUSPLUS, SanitizerKind.CMPLOG): "aflpp_cmplog",
    (FuzzEngine.AFLPLUSPLUS_NYX, SanitizerKind.NONE): "aflpp",
    (FuzzEngine.AFLPLUSPLUS_NYX, SanitizerKind.ADDRESS): "aflpp_asan",
    (FuzzEngine.HONGGFUZZ, SanitizerKind.NONE): "honggfuzz",
    (FuzzEngine.HONGGFUZZ, SanitizerKind.UNDEFINED): "honggfuzz_ubsan",
    (FuzzEngine.HONGGFUZZ, SanitizerKind.ADDRESS): "honggfuzz_asan",
    (FuzzEngine.HONGGFUZZ, SanitizerKind.MEMORY): "honggfuzz_msan",
    (FuzzEngine.SEMSAN, SanitizerKind.NONE): "semsan",
    (FuzzEngine.NATIVE_GO, SanitizerKind.NONE): "native_go",
    (FuzzEngine.NONE, SanitizerKind.COVERAGE): "coverage",
}

_SEMSAN_BUILD_ENGINES = (FuzzEngine.AFLPLUSPLUS, FuzzEngine.SEMSAN)


def get_harness_dir(
    engine: FuzzEngine, sanitizer: Sanitizer, config: ProjectConfig
) -> Optional[str]:
    """Name of the output directory holding harnesses built for an engine and sanitizer."""
    if not config.has_engine(engine) or not config.has_sanitizer(sanitizer):
        # The project was not built for this combination.
        return None
    if sanitizer.build is not None:
        if engine in _SEMSAN_BUILD_ENGINES:
            return f"semsan_{sanitizer.build.value}"
        return None
    return _HARNESS_DIRS.get((engine, sanitizer.kind))


def get_harness_binary(
    engine: FuzzEngine, sanitizer: Sanitizer, harness: str, config: ProjectConfig
) -> Optional[Path]:
    """Path of the binary for a harness, or None if the project has no such build."""
    harness_dir = get_harness_dir(engine, sanitizer, config)
    if harness_dir is None:
        return None
    # Projects that select the harness through an environment variable ship a single "fuzz" binary.
    binary_name = "fuzz" if config.fuzz_env_var is not None else harness
    return Path(f"{HARNESS_ROOT}/{harness_dir}/{binary_name}")


def get_afl_tool_path(tool: AflTool) -> str:
    base = os.environ.get("FUZZOR_AFLPP_BIN_PATH")
    if base is None:
        return tool.value
    return str(Path(base) / tool.value)