"""
Filesystem change tracing of external commands.

`run_traced` runs a command under strace, restricted to system calls that
create, write, truncate, remove, rename or change the permissions or
timestamps of files, and returns the set of paths those calls touched.

The trace is scraped as text (`parse_touched_paths`), which is tied to
strace's output format. Callers only depend on `run_traced`.
"""
import os
import re
import logging
import tempfile
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple
from rustctl.errors import ExecError, TracerExitError, TracerOutputError, TracerSpawnError
from rustctl.system.process_utils import Dependency, format_command

log = logging.getLogger(__name__)

TRACED_CALLS = (
    "open", "openat", "creat",
    "write", "pwrite64", "writev",
    "unlink", "unlinkat",
    "rename", "renameat", "renameat2",
    "chmod", "fchmod", "fchmodat",
    "utimensat",
)
WRITE_FLAGS = ("O_WRONLY", "O_RDWR", "O_CREAT", "O_TRUNC", "O_APPEND")

_PID_PREFIX = re.compile(r"^(?:\[pid\s+(?P<bracketed>\d+)\]|(?P<bare>\d+))\s+")
_COMPLETE = re.compile(r"^(?P<call>\w+)\((?P<args>.*)\)\s+=\s+(?P<result>.*)$")
_UNFINISHED = re.compile(r"^(?P<call>\w+)\((?P<args>.*?)\s*<unfinished \.\.\.>$")
_RESUMED = re.compile(r"^<\.\.\. (?P<call>\w+) resumed>\s*(?P<args>.*)\)\s+=\s+(?P<result>.*)$")
_FD = re.compile(r"^(?:-?\d+|AT_FDCWD)(?:<(?P<path>.*)>)?$")
_ESCAPE = re.compile(rb"\\(x[0-9a-fA-F]{2}|[0-7]{1,3}|.)")
_SIMPLE_ESCAPES = {b"n": b"\n", b"t": b"\t", b"r": b"\r", b"v": b"\v", b"f": b"\f"}


def _unescape(quoted: str) -> str:
    """Decodes a C-style quoted strace string (without the surrounding quotes)."""
    def replace(match: "re.Match[bytes]") -> bytes:
        token = match.group(1)
        if token[:1] == b"x":
            return bytes([int(token[1:], 16)])
        if token[:1].isdigit():
            return bytes([int(token, 8) & 0xFF])
        return _SIMPLE_ESCAPES.get(token, token)

    raw = _ESCAPE.sub(replace, quoted.encode("utf-8", errors="surrogateescape"))
    return raw.decode("utf-8", errors="surrogateescape")


def split_args(args: str) -> List[str]:
    """Splits a strace argument list on top-level commas, respecting quotes, `<...>` decorations and brackets."""
    parts: List[str] = []
    current: List[str] = []
    depth = 0
    in_quote = False
    escaped = False

    for char in args:
        if in_quote:
            current.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_quote = False
            continue
        if char == '"':
            in_quote = True
        elif char in "[{<(":
            depth += 1
        elif char in "]}>)":
            depth = max(depth - 1, 0)
        elif char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)

    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def _quoted_path(arg: str) -> Optional[str]:
    # Strings strace had to truncate end in `"...`; those are not usable paths.
    if len(arg) >= 2 and arg[0] == '"' and arg.endswith('"'):
        return _unescape(arg[1:-1])
    return None


def _fd_path(arg: str) -> Optional[str]:
    match = _FD.match(arg)
    if not match or not match.group("path"):
        return None
    path = match.group("path")
    # Pipes, sockets, anon inodes etc. are decorated too, but are not files.
    return path if path.startswith("/") else None


def _written_fd_path(arg: str) -> Optional[str]:
    path = _fd_path(arg)
    # Terminals and /dev/null are written to all the time and are not part of the installation.
    return None if path is None or path.startswith("/dev/") else path


def _at_path(args: List[str], dirfd_index: int) -> Optional[str]:
    """Resolves the path argument of an *at() call against its decorated dirfd, when it is relative."""
    if len(args) <= dirfd_index + 1:
        return None
    path = _quoted_path(args[dirfd_index + 1])
    if path is None:
        return None
    if os.path.isabs(path):
        return path
    base = _fd_path(args[dirfd_index])
    return os.path.join(base, path) if base else path


def _has_write_flag(flags: str) -> bool:
    return any(flag in flags for flag in WRITE_FLAGS)


def paths_of_call(call: str, args: List[str]) -> List[str]:
    """Returns the paths a single successful system call modified."""
    def arg(i: int) -> str:
        return args[i] if len(args) > i else ""

    if call == "open":
        return [p for p in [_quoted_path(arg(0))] if p and _has_write_flag(arg(1))]
    if call == "openat":
        return [p for p in [_at_path(args, 0)] if p and _has_write_flag(arg(2))]
    if call in ("creat", "unlink", "chmod"):
        return [p for p in [_quoted_path(arg(0))] if p]
    if call in ("write", "pwrite64", "writev", "fchmod"):
        return [p for p in [_written_fd_path(arg(0))] if p]
    if call in ("unlinkat", "fchmodat"):
        return [p for p in [_at_path(args, 0)] if p]
    if call == "utimensat":
        # utimensat(fd, NULL, ...) updates the file the descriptor refers to.
        if arg(1) == "NULL":
            return [p for p in [_fd_path(arg(0))] if p]
        return [p for p in [_at_path(args, 0)] if p]
    if call == "rename":
        return [p for p in (_quoted_path(arg(0)), _quoted_path(arg(1))) if p]
    if call in ("renameat", "renameat2"):
        return [p for p in (_at_path(args, 0), _at_path(args, 2)) if p]
    return []


def parse_touched_paths(lines: Iterable[str]) -> FrozenSet[str]:
    """
    Collects every path modified by a successful call in strace output.

    Calls interrupted by another traced process (`<unfinished ...>`) are stitched
    back together with their `<... resumed>` continuation per process ID.
    Failed calls (`= -1 ...`) touched nothing and are ignored.
    """
    touched: Set[str] = set()
    pending: Dict[Tuple[Optional[str], str], str] = {}

    for raw in lines:
        line = raw.rstrip("\n")
        pid = None
        prefix = _PID_PREFIX.match(line)
        if prefix:
            pid = prefix.group("bracketed") or prefix.group("bare")
            line = line[prefix.end():]

        unfinished = _UNFINISHED.match(line)
        if unfinished:
            pending[(pid, unfinished.group("call"))] = unfinished.group("args")
            continue

        resumed = _RESUMED.match(line)
        if resumed:
            call = resumed.group("call")
            head = pending.pop((pid, call), None)
            if head is None:
                continue
            args_text = f"{head}{resumed.group('args')}"
            result = resumed.group("result")
        else:
            complete = _COMPLETE.match(line)
            if not complete:
                continue
            call, args_text, result = complete.group("call", "args", "result")

        if call not in TRACED_CALLS or result.startswith("-1") or result.startswith("?"):
            continue
        touched.update(paths_of_call(call, split_args(args_text)))

    return frozenset(touched)


def strace_argv(trace_file: Path, dependency: Dependency, argv: Sequence[str]) -> List[str]:
    """Builds the tracer's argument vector wrapping `dependency argv...`."""
    return [
        "-f", "-qq", "-y",
        "-o", str(trace_file),
        "-e", f"trace={','.join(TRACED_CALLS)}",
        "--", str(dependency.executable), *[str(a) for a in argv],
    ]


def run_traced(
    dependency: Dependency,
    argv: Sequence[str],
    work_dir: Optional[Path] = None,
    tracer: Optional[Dependency] = None,
) -> FrozenSet[str]:
    """
    Runs a command to completion under strace and returns the paths it modified.

    :param dependency: The command to trace.
    :param argv: Its arguments.
    :param work_dir: Working directory of the traced command.
    :param tracer: The strace dependency; defaults to `strace` on PATH.
    :raises TracerSpawnError: If strace cannot be started.
    :raises TracerExitError: If strace or the traced command exit non-zero.
    :raises TracerOutputError: If the trace cannot be read or is not decodable text.
    """
    tracer = tracer or Dependency(Path("strace"))
    # strace passes its own environment on to the traced command.
    tracer = Dependency(tracer.executable, env={**dependency.env, **tracer.env})
    command = format_command(dependency.executable, argv)
    fd, trace_name = tempfile.mkstemp(prefix="rustctl-", suffix=".strace")
    os.close(fd)
    trace_file = Path(trace_name)

    try:
        log.info(f"Tracing filesystem changes of: {command}")
        try:
            tracer.exec(strace_argv(trace_file, dependency, argv), work_dir=work_dir, run_till_end=True)
        except ExecError as e:
            if e.status is None:
                raise TracerSpawnError(e.command) from e
            raise TracerExitError(e.command, e.status) from e

        try:
            trace_text = trace_file.read_bytes().decode("utf-8")
        except OSError as e:
            raise TracerOutputError(command, stderr=f"cannot read trace output: {e}") from e
        except UnicodeDecodeError as e:
            raise TracerOutputError(command, stderr=f"trace output is not text: {e}") from e
    finally:
        trace_file.unlink(missing_ok=True)

    touched = parse_touched_paths(trace_text.splitlines())
    log.info(f"{len(touched)} paths were touched by: {command}")
    for path in sorted(touched):
        log.debug(f"Touched: {path}")
    return touched
