import queue
import psutil
import logging
import threading
from enum import Enum
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)


class Phase(str, Enum):
    """Lifecycle phase as shown to the dashboard."""
    UNKNOWN = "Unknown"
    NOT_INSTALLED = "NotInstalled"
    INSTALLING = "Installing"
    INSTALLED_NOT_RUNNING_NOT_UPDATED = "InstalledNotRunningNotUpdated"
    UPDATING = "Updating"
    INSTALLED_NOT_RUNNING_UPDATED = "InstalledNotRunningUpdated"
    RUNNING_NOT_HEALTHY = "RunningNotHealthy"
    RUNNING_HEALTHY = "RunningHealthy"
    STOPPED = "Stopped"
    FAILED = "Failed"


class GameServerState(Enum):
    """Readiness signals published once the game server can be played on."""
    PLAYABLE = "Playable"


class Command(str, Enum):
    """Commands dashboard clients may send. Values are the wire `_type` tags."""
    INSTALL_OR_UPDATE_AND_START = "InstallOrUpdateAndStart"
    STOP = "Stop"

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> "Command":
        """Parses `{"_type": "Stop"}`. Raises ValueError for anything else."""
        if not isinstance(payload, dict):
            raise ValueError(f"command must be an object, got {type(payload).__name__}")
        return cls(payload.get("_type"))


@dataclass(frozen=True)
class Snapshot:
    phase: str
    build_id: Optional[int]
    pid: Optional[int]
    cpu_percent: Optional[float]
    memory_rss: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SharedState:
    """
    State shared between the lifecycle workflow and its observers.

    The workflow writes phase, build ID and PID; the resource monitor writes usage;
    the dashboard only reads snapshots and enqueues commands.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phase = Phase.UNKNOWN
        self._build_id: Optional[int] = None
        self._pid: Optional[int] = None
        self._cpu_percent: Optional[float] = None
        self._memory_rss: Optional[int] = None
        self.commands: "queue.Queue[Command]" = queue.Queue()

    def set_phase(self, phase: Phase, build_id: Optional[int] = None, pid: Optional[int] = None) -> None:
        with self._lock:
            self._phase = phase
            if build_id is not None:
                self._build_id = build_id
            if pid is not None:
                self._pid = pid
            build_id, pid = self._build_id, self._pid
        log.debug(f"Phase: {phase.value} (build ID {build_id}, PID {pid})")

    def clear_pid(self) -> None:
        with self._lock:
            self._pid = None
            self._cpu_percent = None
            self._memory_rss = None

    @property
    def pid(self) -> Optional[int]:
        with self._lock:
            return self._pid

    def set_usage(self, cpu_percent: Optional[float], memory_rss: Optional[int]) -> None:
        with self._lock:
            self._cpu_percent = cpu_percent
            self._memory_rss = memory_rss

    def snapshot(self) -> Snapshot:
        with self._lock:
            return Snapshot(
                phase=self._phase.value,
                build_id=self._build_id,
                pid=self._pid,
                cpu_percent=self._cpu_percent,
                memory_rss=self._memory_rss,
            )


class ResourceMonitor:
    """Samples CPU and memory usage of the supervised process in a background thread."""

    def __init__(self, shared: SharedState, interval: float = 0.5):
        self.shared = shared
        self.interval = interval
        self.stop_event = threading.Event()
        self._proc: Optional[psutil.Process] = None
        self._thread = threading.Thread(target=self._run, daemon=True, name="ResourceMonitorThread")

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self.stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=self.interval + 1)

    def sample(self) -> None:
        """Takes one measurement of the current PID, if any."""
        pid = self.shared.pid
        if pid is None:
            self._proc = None
            return
        try:
            if self._proc is None or self._proc.pid != pid:
                self._proc = psutil.Process(pid)
                # The first cpu_percent() call only primes the counter.
                self._proc.cpu_percent(None)
            self.shared.set_usage(self._proc.cpu_percent(None), self._proc.memory_info().rss)
        except psutil.NoSuchProcess:
            self._proc = None
            self.shared.set_usage(None, None)
        except psutil.Error as e:
            log.debug(f"Could not sample resource usage of PID {pid}: {e}")

    def _run(self) -> None:
        while not self.stop_event.wait(self.interval):
            self.sample()
