# fuzzinfra

Tooling for running fuzzing campaigns over a project that is built for several
fuzz engines and sanitizers. A single YAML project config describes the
project's language, the engines (libFuzzer, AFL++, AFL++ Nyx, honggfuzz,
SemSan, native Go) and the sanitizers it is built with. Every tool reads that
config and works out where each harness binary lives
(`/workdir/out/<engine dir>/<harness>`).

## Installation

```
pip install .
```

Python 3.10 or later is required. The tools start the usual fuzzing programs
(`afl-fuzz`, `afl-cmin`, `honggfuzz`, `semsan`, `llvm-cov`, `llvm-profdata`,
`rsync`, `file`, ...), which must be on `PATH` in the environment the tools run
in. Set `FUZZOR_AFLPP_BIN_PATH` to point at a directory holding the AFL++ tools
if they are not on `PATH`.

## Project config

```yaml
name: example
owner: example-owner
repo: example-repo
branch: main
pr_number: null
language: Cpp
ccs: []
engines: [LibFuzzer, AflPlusPlus]
sanitizers: [None, Address, Undefined, CmpLog]
architectures: [Amd64]
fuzz_env_var: null
no_stack_limit_harnesses: null
```

SemSan builds are written as `!SemSan GccO2` (or `{SemSan: GccO2}`).

## Commands

Build every engine/sanitizer combination the config asks for by running the
project's build script with `CC`, `CXX`, `CFLAGS`, `CXXFLAGS`,
`LIB_FUZZING_ENGINE`, `FUZZING_ENGINE` and `OUT` set:

```
fuzzinfra-build config.yaml build.sh /workdir/out
```

Start a campaign for one harness. The available cores are shared out between
the configured engines and `ensemble-fuzz` is started with the matching flags;
`--duration` is given in CPU hours. A dictionary is picked up from
`/<harness>.options.yaml` when that file exists:

```
fuzzinfra-fuzz config.yaml my_harness --duration 8 --workspace /workdir/fuzz
```

Run several fuzzers side by side directly, synchronising their corpora and
solutions through a global corpus in the workspace (with `rsync`) and writing
aggregated statistics to `stats.yaml`:

```
ensemble-fuzz --libfuzzer-binary ./fuzz_libfuzzer --aflpp-binary ./fuzz_afl \
    --sync-interval 600 --max-duration 3600 --workspace ./ws
```

Minimize a corpus with every minimizer the config supports; the command fails
only if none of them succeeded:

```
fuzzinfra-minimize config.yaml corpus/ minimized/ my_harness
```

Produce an `llvm-cov` summary (`coverage-summary.json`), a list of covered,
demangled functions (`/workdir/covered-functions.txt`) and an HTML report
(`/workdir/coverage_report`) for a corpus:

```
fuzzinfra-coverage config.yaml corpus/ my_harness
```

## Library use

```python
from fuzzinfra.config import FuzzEngine, ProjectConfig, Sanitizer, get_harness_binary

config = ProjectConfig.load("config.yaml")
binary = get_harness_binary(FuzzEngine.LIBFUZZER, Sanitizer.ADDRESS, "my_harness", config)
```

`get_harness_binary` returns `None` when the project was not built for the
requested engine and sanitizer. The `fuzzinfra.ensemble` package exposes the
individual engines (`AflppFuzzer`, `LibFuzzer`, `HonggFuzzer`, `SemSanFuzzer`,
`NativeGoFuzzer`), `aggregate_stats` and the `EnsembleTask` that keeps their
corpora in sync.

## What it does not do

There is no command that re-runs found solutions against the harnesses to
confirm them and capture stack traces or flame graphs. Solutions found during a
campaign are collected in the workspace's `solutions` directory, and
`fuzzinfra.config.ReproducedSolution` can read and write the YAML form of a
reproduced solution (cause, base64 encoded input and trace), but nothing in the
package produces one from a harness run. The `fuzzinfra.reproducer` package
holds no modules.