[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fuzzinfra"
version = "0.1.0"
description = "Build, fuzz, minimize and report coverage for fuzzing campaigns across several fuzz engines"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "fuzzing",
    "libfuzzer",
    "afl++",
    "honggfuzz",
    "semsan",
    "coverage",
    "ensemble",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
    "Topic :: Security",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
fuzzinfra-build = "fuzzinfra.builder:main"
fuzzinfra-fuzz = "fuzzinfra.launcher:main"
fuzzinfra-minimize = "fuzzinfra.minimizer:main"
fuzzinfra-coverage = "fuzzinfra.coverage:main"
ensemble-fuzz = "fuzzinfra.ensemble.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["fuzzinfra"]

[tool.hatch.build.targets.sdist]
include = ["fuzzinfra", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
