import os
import stat
import time
from pathlib import Path

import pytest

from fuzzinfra.config import FuzzerStats
from fuzzinfra.ensemble.honggfuzz import HonggFuzzer, parse_stats_line


def test_comment_line_leaves_stats_unchanged():
    stats = FuzzerStats(execs_per_sec=5.0, saved_crashes=1)
    header = "# unix_time, last_cov_update, total_exec, exec_per_sec, crashes"
    assert parse_stats_line(header, stats) == stats


def test_data_line_updates_rate_and_unique_crashes():
    stats = FuzzerStats(corpus_count=9, saved_hangs=4)
    updated = parse_stats_line("1700000000, 1700000000, 1000, 250, 3, 2, 0, 10, 20", stats)
    assert updated.execs_per_sec == 250.0
    assert updated.saved_crashes == 2
    assert updated.corpus_count == 9
    assert updated.saved_hangs == 4


@pytest.mark.parametrize("line", ["1,2,abc,4,5,6", "1,2,3", "1,2,3,-4,5,6"])
def test_malformed_line_raises(line):
    with pytest.raises(ValueError):
        parse_stats_line(line, FuzzerStats())


def test_directories(tmp_path):
    fuzzer = HonggFuzzer(tmp_path / "target", tmp_path / "ws", 2)
    assert fuzzer.push_corpus() == tmp_path / "ws" / "corpus"
    assert fuzzer.pull_corpus() is None
    assert fuzzer.solutions() == [tmp_path / "ws" / "solutions"]
    assert fuzzer.name() == "honggfuzz"
    assert fuzzer.instance_name() == "honggfuzz"
    assert fuzzer.get_stats() == FuzzerStats()


def test_start_follows_stats_file(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    capture = tmp_path / "capture"
    capture.mkdir()
    script = bin_dir / "honggfuzz"
    script.write_text(
        "#!/bin/sh\n"
        'printf \'%s\\n\' "$@" > "$CAPTURE_DIR/args"\n'
        'while [ $# -gt 0 ]; do\n'
        '  if [ "$1" = "--statsfile" ]; then f="$2"; fi\n'
        "  shift\n"
        "done\n"
        "printf '# header\\n1,2,3,500,0,7,0,0,0\\n' > \"$f\"\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("CAPTURE_DIR", str(capture))

    fuzzer = HonggFuzzer(tmp_path / "target", tmp_path / "ws", 3)
    fuzzer.start().wait()

    argv = (capture / "args").read_text().splitlines()
    assert argv[argv.index("--threads") + 1] == "3"
    assert argv[argv.index("--input") + 1] == str(tmp_path / "ws" / "corpus")
    assert argv[argv.index("--crashdir") + 1] == str(tmp_path / "ws" / "solutions")
    assert argv[-2:] == ["--", str(tmp_path / "target")]
    assert Path(argv[argv.index("--statsfile") + 1]).name.startswith("honggfuzz-")
    assert (tmp_path / "ws" / "corpus").is_dir()

    deadline = time.monotonic() + 10
    while fuzzer.get_stats().execs_per_sec != 500.0 and time.monotonic() < deadline:
        time.sleep(0.05)
    stats = fuzzer.get_stats()
    assert stats.execs_per_sec == 500.0
    assert stats.saved_crashes == 7