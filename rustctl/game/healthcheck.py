import time
import queue
import socket
import logging
import threading
import subprocess
from typing import Optional, Tuple
from rustctl.errors import HealthcheckTimeoutError, ServerProcessError

log = logging.getLogger(__name__)


class LogWatcher:
    """
    Forwards the game server's output lines to the `proc.<name>` logger and
    watches them for the line the server prints once startup is complete.

    Runs in a dedicated background thread for the whole life of the server, so
    the output queue never grows unbounded.
    """

    def __init__(self, lines: "queue.Queue[str]", name: str, ready_marker: str):
        self.lines = lines
        self.ready_marker = ready_marker
        self.ready = threading.Event()
        self.stop_event = threading.Event()
        self.proc_logger = logging.getLogger(f"proc.{name}")
        self._thread = threading.Thread(target=self._run, daemon=True, name="GameLogWatcherThread")

    def start(self) -> "LogWatcher":
        self._thread.start()
        return self

    def stop(self) -> None:
        self.stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=2)

    def feed(self, line: str) -> None:
        self.proc_logger.info(line)
        if not self.ready.is_set() and self.ready_marker in line:
            log.info(f"Game server reported ready: '{line.strip()}'")
            self.ready.set()

    def _run(self) -> None:
        while not self.stop_event.is_set():
            try:
                line = self.lines.get(timeout=0.2)
            except queue.Empty:
                continue
            self.feed(line)


def probe_port(host: str, port: int, timeout: float = 1.0) -> bool:
    """Returns True if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_until_healthy(
    process: subprocess.Popen,
    watcher: LogWatcher,
    timeout: float,
    interval: float = 1.0,
    probe: Optional[Tuple[str, int]] = None,
) -> None:
    """
    Polls for positive evidence that the game server finished starting.

    Evidence is either the ready line in the server's output or, when `probe`
    is given, the port accepting connections.

    :raises ServerProcessError: If the server exits while starting.
    :raises HealthcheckTimeoutError: If no evidence turns up within `timeout` seconds.
    """
    log.info(f"Waiting up to {timeout:.0f}s for the game server (PID {process.pid}) to become healthy...")
    start_time = time.monotonic()
    while time.monotonic() - start_time < timeout:
        status = process.poll()
        if status is not None:
            raise ServerProcessError(f"game server exited with status {status} during startup")
        if watcher.ready.is_set():
            return
        if probe and probe_port(*probe, timeout=min(interval, 1.0)):
            log.info(f"Game server is accepting connections on {probe[0]}:{probe[1]}.")
            return
        watcher.ready.wait(interval)

    raise HealthcheckTimeoutError(f"game server did not become healthy within {timeout:.0f} seconds")
