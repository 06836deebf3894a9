"""
The lifecycle states of the supervised game server.

Each state is a value holding the shared, read-only Resources. A transition
method consumes its state and returns the next, more advanced one (or raises);
a consumed state refuses to be advanced again.

    NotInstalled ──install──┐
                            ├─> InstalledNotRunningUpdated ─spawn─> RunningNotHealthy ─healthcheck─> RunningHealthy
    InstalledNotRunningNotUpdated ──update──┘
"""
import os
import queue
import logging
import subprocess
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, List, Optional, Union, TYPE_CHECKING
from rustctl.errors import ExitCode, HealthcheckTimeoutError, ServerProcessError, StateConsumedError, VerificationError
from rustctl.game.healthcheck import LogWatcher, wait_until_healthy
from rustctl.game.resources import Resources
from rustctl.game.snapshot import Command, GameServerState, Phase
from rustctl.steam.buildid import read_buildid_from_file
from rustctl.system.process_utils import Dependency, terminate_process

if TYPE_CHECKING:
    from rustctl.rcon.relay import RconRelay
    from rustctl.steam.steamcmd import SteamCmd

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LaunchOptions:
    """How the game server is started, health checked, controlled and stopped."""
    argv: List[str] = field(default_factory=list)
    ready_marker: str = "Server startup complete"
    startup_timeout: float = 900
    healthcheck_interval: float = 1.0
    rcon_host: str = "127.0.0.1"
    rcon_port: int = 28016
    rcon_password: str = ""
    rcon_connect_timeout: float = 10
    rcon_response_timeout: float = 10
    shutdown_timeout: float = 30

    @classmethod
    def from_settings(cls, settings) -> "LaunchOptions":
        argv = [
            "-batchmode",
            "+server.port", str(settings.GAME_SERVER_PORT),
            "+server.identity", settings.GAME_SERVER_IDENTITY,
            "+rcon.web", "1",
            "+rcon.port", str(settings.RCON_PORT),
            "+rcon.password", settings.RCON_PASSWORD,
            *settings.GAME_SERVER_EXTRA_ARGS,
        ]
        return cls(
            argv=argv,
            ready_marker=settings.READY_LOG_MARKER,
            startup_timeout=float(settings.GAME_STARTUP_TIMEOUT),
            healthcheck_interval=float(settings.HEALTHCHECK_INTERVAL),
            rcon_host=settings.RCON_HOST,
            rcon_port=int(settings.RCON_PORT),
            rcon_password=settings.RCON_PASSWORD,
            rcon_connect_timeout=float(settings.RCON_CONNECT_TIMEOUT),
            rcon_response_timeout=float(settings.RCON_RESPONSE_TIMEOUT),
            shutdown_timeout=float(settings.GRACEFUL_SHUTDOWN_TIMEOUT),
        )


def game_dependency(resources: Resources, install_dir: Path) -> Dependency:
    """Describes the game server executable installed in `install_dir`, including its build ID."""
    plugins_dir = install_dir / f"{resources.executable_name}_Data" / "Plugins" / "x86_64"
    library_path = os.pathsep.join(p for p in (os.environ.get("LD_LIBRARY_PATH"), str(plugins_dir)) if p)
    return Dependency(
        resources.executable_path(install_dir),
        env={"LD_LIBRARY_PATH": library_path},
        build_id=read_buildid_from_file(resources.manifest_path(install_dir)),
    )


def verify_installation(resources: Resources, install_dir: Path, touched: FrozenSet[str]) -> Dependency:
    """
    Checks that the game server executable exists after an install or update.

    The filesystem is trusted over SteamCMD's exit status.
    :raises VerificationError: If the executable is missing.
    """
    executable = resources.executable_path(install_dir)
    if not executable.is_file():
        raise VerificationError(
            f"'{executable}' does not exist although the operation reported success "
            f"({len(touched)} paths touched)"
        )
    if str(executable) in touched:
        log.info(f"'{executable}' was written by the operation.")
    else:
        log.info(f"'{executable}' was left unchanged by the operation.")
    game = game_dependency(resources, install_dir)
    log.info(f"Installed build ID: {game.build_id}")
    return game


class _State:
    """Base of all lifecycle states. A state can be advanced exactly once."""
    phase = Phase.UNKNOWN

    def __init__(self, resources: Resources):
        self.resources = resources
        self._consumed = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"

    @property
    def consumed(self) -> bool:
        return self._consumed

    def _consume(self) -> None:
        if self._consumed:
            raise StateConsumedError(f"{type(self).__name__} has already been advanced")
        self._consumed = True


class NotInstalled(_State):
    phase = Phase.NOT_INSTALLED

    def install_latest_version_from_remote(self, steamcmd: "SteamCmd") -> "InstalledNotRunningUpdated":
        """Fresh install into the root directory."""
        self._consume()
        install_dir = self.resources.root_dir
        steamcmd.ensure_installed()
        touched = steamcmd.install(install_dir)
        game = verify_installation(self.resources, install_dir, touched)
        return InstalledNotRunningUpdated(self.resources, game)


class InstalledNotRunningNotUpdated(_State):
    phase = Phase.INSTALLED_NOT_RUNNING_NOT_UPDATED

    def __init__(self, resources: Resources, game: Dependency):
        super().__init__(resources)
        self.game = game

    def __repr__(self) -> str:
        return f"<{type(self).__name__} build_id={self.game.build_id}>"

    def update_existing_installation_from_remote(self, steamcmd: "SteamCmd") -> "InstalledNotRunningUpdated":
        """Updates the installation, unless the local build already is the latest one."""
        self._consume()
        steamcmd.ensure_installed()
        local = self.game.build_id
        remote = steamcmd.query_remote_buildid()

        if remote is not None and local == remote:
            log.info(f"Installed build {local} is the latest. Skipping update.")
            return InstalledNotRunningUpdated(self.resources, self.game)

        if remote is None:
            log.warning("Could not determine the latest remote build ID. Updating anyway.")
        else:
            log.info(f"UPDATE FOUND: {local} -> {remote}.")
        install_dir = self.game.executable.parent
        touched = steamcmd.update(install_dir)
        game = verify_installation(self.resources, install_dir, touched)
        return InstalledNotRunningUpdated(self.resources, game)


class InstalledNotRunningUpdated(_State):
    phase = Phase.INSTALLED_NOT_RUNNING_UPDATED

    def __init__(self, resources: Resources, game: Dependency):
        super().__init__(resources)
        self.game = game

    def __repr__(self) -> str:
        return f"<{type(self).__name__} build_id={self.game.build_id}>"

    def spawn_game_server_process(self, launch: LaunchOptions) -> "RunningNotHealthy":
        """Starts the game server; its output is drained into a log watcher."""
        self._consume()
        output: "queue.Queue[str]" = queue.Queue()
        # stderr goes straight to the proc.<name> logger; only stdout carries the ready line.
        process = self.game.exec(launch.argv, work_dir=self.game.executable.parent, stdout=output, run_till_end=False)
        watcher = LogWatcher(output, self.game.name, launch.ready_marker).start()
        return RunningNotHealthy(self.resources, self.game, process, watcher, launch)


class RunningNotHealthy(_State):
    phase = Phase.RUNNING_NOT_HEALTHY

    def __init__(self, resources: Resources, game: Dependency, process: subprocess.Popen, watcher: LogWatcher, launch: LaunchOptions):
        super().__init__(resources)
        self.game = game
        self.process = process
        self.watcher = watcher
        self.launch = launch

    def __repr__(self) -> str:
        return f"<{type(self).__name__} pid={self.process.pid}>"

    def healthcheck_timeout(self) -> "RunningHealthy":
        """
        Waits for the server to become healthy. On failure the server is stopped
        before the error propagates, as nobody else will supervise it.
        """
        self._consume()
        try:
            wait_until_healthy(
                self.process,
                self.watcher,
                timeout=self.launch.startup_timeout,
                interval=self.launch.healthcheck_interval,
                probe=(self.launch.rcon_host, self.launch.rcon_port),
            )
        except (HealthcheckTimeoutError, ServerProcessError):
            terminate_process(self.process.pid, self.launch.shutdown_timeout)
            self.watcher.stop()
            raise

        readiness: "queue.Queue[GameServerState]" = queue.Queue()
        readiness.put(GameServerState.PLAYABLE)
        return RunningHealthy(self.resources, self.game, self.process, self.watcher, self.launch, readiness)


class RunningHealthy(_State):
    phase = Phase.RUNNING_HEALTHY

    def __init__(
        self,
        resources: Resources,
        game: Dependency,
        process: subprocess.Popen,
        watcher: LogWatcher,
        launch: LaunchOptions,
        readiness: "queue.Queue[GameServerState]",
    ):
        super().__init__(resources)
        self.game = game
        self.process = process
        self.watcher = watcher
        self.launch = launch
        self.readiness = readiness
        self._stop_requested = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} pid={self.process.pid} build_id={self.game.build_id}>"

    @property
    def pid(self) -> int:
        return self.process.pid

    def rcon(self, connector: Optional[Callable[..., Any]] = None) -> "RconRelay":
        """
        Opens an RCON session to the server once it has signalled readiness.

        :param connector: Opens the WebSocket; defaults to the `websockets` sync client.
        """
        from rustctl.rcon.relay import RconRelay

        options = {"connector": connector} if connector is not None else {}
        return RconRelay.connect(
            self.readiness,
            self.launch.rcon_host,
            self.launch.rcon_port,
            self.launch.rcon_password,
            startup_timeout=self.launch.startup_timeout,
            connect_timeout=self.launch.rcon_connect_timeout,
            response_timeout=self.launch.rcon_response_timeout,
            **options,
        )

    def stop(self) -> None:
        """Gracefully stops the game server."""
        log.info(f"Stopping game server (PID {self.pid})...")
        self._stop_requested = True
        terminate_process(self.pid, self.launch.shutdown_timeout)

    def wait(self, commands: Optional["queue.Queue[Command]"] = None, poll_interval: float = 0.5) -> ExitCode:
        """
        Runs until the game server terminates, handling commands from the
        dashboard and Ctrl+C on the way.

        :return: SUCCESS if the server exited cleanly or was stopped on request, SERVER_FAILED otherwise.
        """
        self._consume()
        try:
            while self.process.poll() is None:
                try:
                    if commands is None:
                        self.process.wait(timeout=poll_interval)
                        continue
                    command = commands.get(timeout=poll_interval)
                except (queue.Empty, subprocess.TimeoutExpired):
                    continue
                if command is Command.STOP:
                    self.stop()
                else:
                    log.warning(f"Ignoring command '{command.value}': the game server is already running.")
        except KeyboardInterrupt:
            log.info("Interrupted by user.")
            self.stop()

        status = self.process.wait()
        self.watcher.stop()
        if status == 0 or self._stop_requested:
            log.info(f"Game server exited with status {status}.")
            return ExitCode.SUCCESS
        log.error(f"Game server exited with status {status}.")
        return ExitCode.SERVER_FAILED


Game = Union[NotInstalled, InstalledNotRunningNotUpdated, InstalledNotRunningUpdated, RunningNotHealthy, RunningHealthy]
