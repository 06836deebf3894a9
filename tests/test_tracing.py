"""Tests for the strace based filesystem change tracing."""

import tempfile
from pathlib import Path
from typing import Callable

import pytest

from rustctl.errors import ExitCode, TracerExitError, TracerOutputError, TracerSpawnError
from rustctl.system.process_utils import Dependency
from rustctl.system.tracing import TRACED_CALLS, parse_touched_paths, run_traced, split_args, strace_argv

TRACE = """\
1000 openat(AT_FDCWD</srv/root>, "/srv/root/RustDedicated", O_WRONLY|O_CREAT|O_TRUNC, 0755) = 5</srv/root/RustDedicated>
1000 openat(AT_FDCWD</srv/root>, "/etc/ld.so.cache", O_RDONLY|O_CLOEXEC) = 3</etc/ld.so.cache>
1000 openat(AT_FDCWD</srv/root>, "steamapps/appmanifest_258550.acf", O_RDWR|O_CREAT, 0644) = 6</srv/root/steamapps/appmanifest_258550.acf>
1000 write(7</srv/root/RustDedicated_Data/level.assets>, "\\x00\\x01"..., 4096) = 4096
1000 write(1<pipe:[12345]>, "Update state (0x61) downloading", 31) = 31
1000 unlink("/srv/root/old.tmp") = 0
1000 unlinkat(AT_FDCWD</srv/root>, "/srv/root/missing", 0) = -1 ENOENT (No such file or directory)
1000 chmod("/srv/root/RustDedicated", 0755) = 0
1000 rename("/srv/root/a.tmp", "/srv/root/a") = 0
1000 utimensat(AT_FDCWD</srv/root>, "/srv/root/stamp", NULL, 0) = 0
1000 +++ exited with 0 +++
"""


def test_write_and_create_calls_are_collected() -> None:
    touched = parse_touched_paths(TRACE.splitlines())

    assert touched == frozenset({
        "/srv/root/RustDedicated",
        "/srv/root/steamapps/appmanifest_258550.acf",
        "/srv/root/RustDedicated_Data/level.assets",
        "/srv/root/old.tmp",
        "/srv/root/a.tmp",
        "/srv/root/a",
        "/srv/root/stamp",
    })


def test_read_only_open_is_ignored() -> None:
    assert "/etc/ld.so.cache" not in parse_touched_paths(TRACE.splitlines())


def test_failed_calls_are_ignored() -> None:
    assert "/srv/root/missing" not in parse_touched_paths(TRACE.splitlines())


def test_unfinished_calls_are_stitched_per_process() -> None:
    lines = [
        '[pid  2001] openat(AT_FDCWD, "/srv/root/one", O_WRONLY|O_CREAT <unfinished ...>',
        '[pid  2002] openat(AT_FDCWD, "/srv/root/two", O_RDONLY <unfinished ...>',
        '[pid  2001] <... openat resumed>, 0644) = 4',
        '[pid  2002] <... openat resumed>) = 5',
    ]
    assert parse_touched_paths(lines) == frozenset({"/srv/root/one"})


def test_quoted_paths_with_commas_and_escapes() -> None:
    lines = ['openat(AT_FDCWD, "/srv/root/a, b\\"c", O_WRONLY|O_CREAT, 0644) = 3']
    assert parse_touched_paths(lines) == frozenset({'/srv/root/a, b"c'})


def test_split_args_keeps_decorations_together() -> None:
    args = split_args('7</srv/a, b>, "x,y", [{iov_base="z", iov_len=1}], 1')
    assert args == ['7</srv/a, b>', '"x,y"', '[{iov_base="z", iov_len=1}]', "1"]


def test_strace_argv_wraps_the_command(tmp_path: Path) -> None:
    argv = strace_argv(tmp_path / "trace", Dependency(Path("/opt/steamcmd.sh")), ["+login", "anonymous"])

    assert argv[argv.index("-o") + 1] == str(tmp_path / "trace")
    assert argv[argv.index("-e") + 1] == "trace=" + ",".join(TRACED_CALLS)
    assert argv[argv.index("--") + 1:] == ["/opt/steamcmd.sh", "+login", "anonymous"]
    assert "-f" in argv


def test_run_traced_returns_touched_paths(tmp_path: Path, fake_tracer: Callable[..., Dependency]) -> None:
    tracer = fake_tracer(trace='openat(AT_FDCWD, "/srv/root/RustDedicated", O_WRONLY|O_CREAT, 0755) = 3\n')

    touched = run_traced(Dependency(Path("/opt/steamcmd.sh")), ["+quit"], work_dir=tmp_path, tracer=tracer)

    assert touched == frozenset({"/srv/root/RustDedicated"})


def test_run_traced_removes_its_trace_file(tmp_path: Path, fake_tracer: Callable[..., Dependency], monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "tmp").mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path / "tmp"))

    run_traced(Dependency(Path("/opt/steamcmd.sh")), [], tracer=fake_tracer())

    assert list((tmp_path / "tmp").iterdir()) == []


def test_tracer_spawn_failure(tmp_path: Path) -> None:
    with pytest.raises(TracerSpawnError):
        run_traced(Dependency(Path("/opt/steamcmd.sh")), [], tracer=Dependency(tmp_path / "no-strace"))


def test_traced_command_failure(fake_tracer: Callable[..., Dependency]) -> None:
    with pytest.raises(TracerExitError) as excinfo:
        run_traced(Dependency(Path("/opt/steamcmd.sh")), [], tracer=fake_tracer(exit_code=8))
    assert excinfo.value.status == 8


def test_non_text_trace_output(fake_tracer: Callable[..., Dependency]) -> None:
    with pytest.raises(TracerOutputError):
        run_traced(Dependency(Path("/opt/steamcmd.sh")), [], tracer=fake_tracer(raw=b"\xff\xfe\x00openat("))


def test_writes_to_devices_are_ignored() -> None:
    lines = [
        '1000 write(1</dev/pts/0>, "Loading Steam API...OK", 22) = 22',
        '1000 write(2</dev/null>, "warning", 7) = 7',
        '1000 write(8</srv/root/steamapps/appmanifest_258550.acf>, "AppState", 8) = 8',
    ]
    assert parse_touched_paths(lines) == frozenset({"/srv/root/steamapps/appmanifest_258550.acf"})


def test_unreadable_trace_output(tmp_path: Path, script_writer: Callable[[Path, str], Path]) -> None:
    tracer = script_writer(
        tmp_path / "bin" / "strace-drops-output",
        "import os, sys\n"
        "args = sys.argv[1:]\n"
        "os.remove(args[args.index('-o') + 1])\n",
    )

    with pytest.raises(TracerOutputError) as excinfo:
        run_traced(Dependency(Path("/opt/steamcmd.sh")), [], tracer=Dependency(tracer))
    assert excinfo.value.exit_code == ExitCode.INSTALLER_FAILED
