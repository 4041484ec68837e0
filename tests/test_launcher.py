from pathlib import Path
from unittest import mock

import pytest

from fuzzinfra.config import (
    FuzzEngine,
    HarnessConfig,
    Language,
    ProjectConfig,
    Sanitizer,
    SemSanBuild,
    get_harness_binary,
)
from fuzzinfra.launcher import ASAN_OPTIONS, FuzzerConfiguration, fuzzer_flag_args, main


def _config(engines, sanitizers, fuzz_env_var=None):
    return ProjectConfig(
        name="demo",
        owner="someone",
        repo="demo",
        language=Language.CPP,
        ccs=[],
        engines=engines,
        sanitizers=sanitizers,
        fuzz_env_var=fuzz_env_var,
    )


def _configuration(config, cores, dictionary=None):
    return FuzzerConfiguration(config, HarnessConfig(dictionary=dictionary), total_cores=cores)


def test_try_add_fuzzer_respects_cores():
    cfg = _configuration(_config([FuzzEngine.LIBFUZZER], [Sanitizer.NONE, Sanitizer.ADDRESS]), 1)
    assert cfg.try_add_fuzzer(FuzzEngine.LIBFUZZER, Sanitizer.NONE)
    assert not cfg.has_available_cores()
    assert not cfg.try_add_fuzzer(FuzzEngine.LIBFUZZER, Sanitizer.ADDRESS)
    assert cfg.supported_fuzzers == [(FuzzEngine.LIBFUZZER, Sanitizer.NONE)]


def test_try_add_fuzzer_requires_build():
    cfg = _configuration(_config([FuzzEngine.LIBFUZZER], [Sanitizer.NONE]), 4)
    assert not cfg.try_add_fuzzer(FuzzEngine.LIBFUZZER, Sanitizer.MEMORY)
    assert not cfg.try_add_fuzzer(FuzzEngine.HONGGFUZZ, Sanitizer.NONE)
    assert cfg.cores_assigned == 0


def test_native_go_takes_all_cores():
    cfg = _configuration(_config([FuzzEngine.NATIVE_GO], [Sanitizer.NONE]), 8)
    cfg.configure_native_go()
    assert cfg.cores_assigned == cfg.total_cores
    assert cfg.supported_fuzzers == [(FuzzEngine.NATIVE_GO, Sanitizer.NONE)]


def test_semsan_adds_secondaries():
    secondary = Sanitizer.semsan(SemSanBuild.GCC_O2)
    cfg = _configuration(_config([FuzzEngine.SEMSAN], [Sanitizer.NONE, secondary]), 4)
    cfg.configure_semsan()
    assert cfg.supported_fuzzers == [
        (FuzzEngine.SEMSAN, Sanitizer.NONE),
        (FuzzEngine.SEMSAN, secondary),
    ]


def test_libfuzzer_alone_occupies_remaining_cores():
    cfg = _configuration(_config([FuzzEngine.LIBFUZZER], [Sanitizer.NONE, Sanitizer.ADDRESS]), 4)
    cfg.configure_libfuzzer()
    assert cfg.supported_fuzzers == [
        (FuzzEngine.LIBFUZZER, Sanitizer.NONE),
        (FuzzEngine.LIBFUZZER, Sanitizer.ADDRESS),
    ]
    assert cfg.extra_args == ["--libfuzzer-add-cores", "2"]


def test_libfuzzer_value_profile_uses_core():
    cfg = _configuration(
        _config([FuzzEngine.LIBFUZZER, FuzzEngine.AFLPLUSPLUS],
                [Sanitizer.NONE, Sanitizer.VALUE_PROFILE]),
        4,
    )
    cfg.configure_libfuzzer()
    assert cfg.extra_args == ["--libfuzzer-value-profile"]
    assert cfg.cores_assigned == 2


def test_aflpp_with_libfuzzer():
    config = _config(
        [FuzzEngine.AFLPLUSPLUS, FuzzEngine.LIBFUZZER],
        [Sanitizer.NONE, Sanitizer.ADDRESS, Sanitizer.CMPLOG],
    )
    cfg = _configuration(config, 8)
    cfg.configure_libfuzzer()
    cfg.configure_aflplusplus()
    assert cfg.supported_fuzzers == [
        (FuzzEngine.LIBFUZZER, Sanitizer.NONE),
        (FuzzEngine.AFLPLUSPLUS, Sanitizer.NONE),
        (FuzzEngine.AFLPLUSPLUS, Sanitizer.CMPLOG),
        (FuzzEngine.AFLPLUSPLUS, Sanitizer.ADDRESS),
    ]
    assert cfg.extra_args == ["--aflpp-occupy"]


def test_aflpp_nyx():
    cfg = _configuration(_config([FuzzEngine.AFLPLUSPLUS_NYX], [Sanitizer.ADDRESS]), 4)
    cfg.configure_aflplusplus()
    assert cfg.extra_args == ["--aflpp-nyx", "--aflpp-occupy"]
    assert cfg.supported_fuzzers == [(FuzzEngine.AFLPLUSPLUS_NYX, Sanitizer.ADDRESS)]


def test_flag_args_libfuzzer_asan():
    config = _config([FuzzEngine.LIBFUZZER], [Sanitizer.ADDRESS])
    args = fuzzer_flag_args(FuzzEngine.LIBFUZZER, Sanitizer.ADDRESS, "h", config)
    expected = get_harness_binary(FuzzEngine.LIBFUZZER, Sanitizer.ADDRESS, "h", config)
    assert args == ["--libfuzzer-asan-binary", str(expected)]


def test_flag_args_nyx_address_uses_plain_flag():
    config = _config([FuzzEngine.AFLPLUSPLUS_NYX], [Sanitizer.ADDRESS])
    args = fuzzer_flag_args(FuzzEngine.AFLPLUSPLUS_NYX, Sanitizer.ADDRESS, "h", config)
    assert args[0] == "--aflpp-binary"
    assert Path(args[1]).parent.name == "aflpp_asan"


def test_flag_args_semsan_secondary_and_env_var_binary():
    secondary = Sanitizer.semsan(SemSanBuild.CLANG_O0)
    config = _config([FuzzEngine.SEMSAN], [secondary], fuzz_env_var="FUZZ")
    args = fuzzer_flag_args(FuzzEngine.SEMSAN, secondary, "h", config)
    assert args[0] == "--semsan-secondary-binary"
    assert Path(args[1]).name == "fuzz"


def test_flag_args_engine_none_rejected():
    config = _config([FuzzEngine.NONE], [Sanitizer.COVERAGE])
    with pytest.raises(ValueError):
        fuzzer_flag_args(FuzzEngine.NONE, Sanitizer.COVERAGE, "h", config)


def test_flag_args_missing_binary_rejected():
    config = _config([FuzzEngine.LIBFUZZER], [Sanitizer.NONE])
    with pytest.raises(ValueError):
        fuzzer_flag_args(FuzzEngine.LIBFUZZER, Sanitizer.MEMORY, "h", config)


def test_build_command(tmp_path):
    config = _config([FuzzEngine.LIBFUZZER], [Sanitizer.NONE])
    cfg = _configuration(config, 4, dictionary=Path("dict.txt"))
    cfg.configure_libfuzzer()
    argv, env = cfg.build_command("h", 4.0, tmp_path)
    assert argv[0] == "ensemble-fuzz"
    assert argv[1] == "--libfuzzer-binary"
    assert argv[argv.index("--dictionary") + 1] == "dict.txt"
    assert argv[argv.index("--max-duration") + 1] == "3600"
    assert argv[-2:] == ["--workspace", str(tmp_path)]
    assert env == {"ASAN_OPTIONS": ASAN_OPTIONS}


def test_main_runs_ensemble(tmp_path):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "name: demo\nowner: someone\nrepo: demo\nlanguage: Cpp\nccs: []\n"
        "engines: [LibFuzzer]\nsanitizers: [None]\n"
    )
    with mock.patch("fuzzinfra.launcher.os.cpu_count", return_value=2), mock.patch(
        "fuzzinfra.launcher.subprocess.run"
    ) as run:
        run.return_value.returncode = 5
        code = main([str(config_file), "no-such-harness-xyz", "--duration", "1",
                     "--workspace", str(tmp_path / "ws")])
    assert code == 5
    argv = run.call_args.args[0]
    assert argv[0] == "ensemble-fuzz"
    assert "--libfuzzer-add-cores" in argv
    assert run.call_args.kwargs["env"]["ASAN_OPTIONS"] == ASAN_OPTIONS