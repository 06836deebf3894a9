import os
import queue
import psutil
import shlex
import logging
import threading
import subprocess
from pathlib import Path
from typing import IO, Dict, List, Optional, Sequence, Tuple
from rustctl.errors import ExecError

log = logging.getLogger(__name__)


def format_command(executable: str, argv: Sequence[str]) -> str:
    """Formats an executable and its argument vector as a copy-pasteable shell line."""
    return shlex.join([str(executable), *[str(a) for a in argv]])


def _read_pipe(pipe: IO[bytes], process_name: str, level: int, sink: Optional["queue.Queue[str]"]) -> None:
    """Target function for reader threads. Forwards lines from a subprocess pipe to a queue or a logger."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip("\r\n")
            if sink is not None:
                sink.put(line)
            else:
                proc_logger.log(level, line)
    except (OSError, ValueError) as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()


def drain_process_output(
    process: subprocess.Popen,
    name: str,
    stdout: Optional["queue.Queue[str]"] = None,
    stderr: Optional["queue.Queue[str]"] = None,
) -> Tuple[threading.Thread, ...]:
    """Starts one background thread per output stream so the child never blocks on a full pipe."""
    threads = []
    if process.stdout:
        threads.append(threading.Thread(
            target=_read_pipe, args=(process.stdout, name, logging.INFO, stdout),
            daemon=True, name=f"{name}-stdout",
        ))
    if process.stderr:
        threads.append(threading.Thread(
            target=_read_pipe, args=(process.stderr, name, logging.ERROR, stderr),
            daemon=True, name=f"{name}-stderr",
        ))
    for thread in threads:
        thread.start()
    return tuple(threads)


class Dependency:
    """
    A supervised external executable, e.g. SteamCMD or the game server itself.

    :param executable: Path to (or name of) the executable.
    :param env: Environment variables laid over the supervisor's own environment.
    :param build_id: The discovered build ID, if known.
    """

    def __init__(self, executable: Path, env: Optional[Dict[str, str]] = None, build_id: Optional[int] = None):
        self.executable = Path(executable)
        self.env = dict(env or {})
        self.build_id = build_id

    def __repr__(self) -> str:
        return f"Dependency(executable={str(self.executable)!r}, build_id={self.build_id!r})"

    @property
    def name(self) -> str:
        return self.executable.name

    def is_available(self) -> bool:
        return self.executable.is_file() and os.access(self.executable, os.X_OK)

    def _environment(self) -> Optional[Dict[str, str]]:
        if not self.env:
            return None
        return {**os.environ, **self.env}

    def exec(
        self,
        argv: Sequence[str],
        work_dir: Optional[Path] = None,
        stdout: Optional["queue.Queue[str]"] = None,
        stderr: Optional["queue.Queue[str]"] = None,
        run_till_end: bool = True,
    ) -> subprocess.Popen:
        """
        Spawns the executable with its output drained by two reader threads.

        :param argv: Arguments, not including the executable itself.
        :param work_dir: Working directory of the child.
        :param stdout: Queue receiving stdout lines; when None they are logged under `proc.<name>`.
        :param stderr: Queue receiving stderr lines; when None they are logged under `proc.<name>`.
        :param run_till_end: Block until the child exits and check its status.
        :return: The child process handle.
        :raises ExecError: On spawn failure or, when run to completion, on non-zero exit.
        """
        args: List[str] = [str(self.executable), *[str(a) for a in argv]]
        command = format_command(self.executable, argv)
        log.debug(f"Executing: {command}")
        try:
            process = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                cwd=str(work_dir) if work_dir else None,
                env=self._environment(),
            )
        except OSError as e:
            log.error(f"Failed to start '{command}': {e}")
            raise ExecError(command) from e

        readers = drain_process_output(process, self.name, stdout, stderr)
        if not run_till_end:
            log.info(f"{self.name} started with PID: {process.pid}")
            return process

        status = process.wait()
        for reader in readers:
            reader.join()
        if status != 0:
            raise ExecError(command, status)
        return process


def collect_output(sink: "queue.Queue[str]") -> str:
    """Empties a line queue into a single string (only safe once its producers have finished)."""
    lines = []
    while True:
        try:
            lines.append(sink.get_nowait())
        except queue.Empty:
            return "\n".join(lines)


def terminate_process(pid: int, timeout: float) -> None:
    """
    Stops a process and its children: SIGTERM first, SIGKILL for whatever is
    still alive after `timeout` seconds.
    """
    try:
        parent = psutil.Process(pid)
        procs = [parent, *parent.children(recursive=True)]
    except psutil.NoSuchProcess:
        log.debug(f"Process {pid} no longer exists, nothing to stop.")
        return

    for proc in procs:
        try:
            log.debug(f"Sending SIGTERM to {proc.name()} (PID {proc.pid})")
            proc.terminate()
        except psutil.NoSuchProcess:
            continue

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    if not alive:
        return
    log.warning(f"{len(alive)} processes did not terminate gracefully. Forcing shutdown...")
    for proc in alive:
        try:
            log.warning(f"Killing stubborn process {proc.name()} (PID {proc.pid}).")
            proc.kill()
        except psutil.NoSuchProcess:
            continue
