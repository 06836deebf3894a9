"""Tests for the lifecycle state machine."""

import dataclasses
import queue
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List, Optional

import psutil
import pytest

from rustctl.errors import (
    AlreadyRunningError,
    AmbiguousInstallationError,
    ExitCode,
    HealthcheckTimeoutError,
    ServerProcessError,
    StateConsumedError,
    VerificationError,
)
from rustctl.game.lifecycle import classify, start
from rustctl.game.resources import Resources
from rustctl.game.snapshot import Command, GameServerState, Phase, SharedState
from rustctl.game.state import (
    InstalledNotRunningNotUpdated,
    InstalledNotRunningUpdated,
    LaunchOptions,
    NotInstalled,
    RunningHealthy,
    RunningNotHealthy,
    game_dependency,
    verify_installation,
)
from rustctl.steam.steamcmd import SteamCmd
from rustctl.system.process_utils import Dependency

URL = "https://example.invalid/steamcmd_linux.tar.gz"
# Nothing listens here, so port probes fail fast.
CLOSED_PORT = 1


class FakeSteamCmd:
    """Records install/update calls and creates the executable like a real install would."""

    def __init__(self, resources: Resources, remote_buildid: Optional[int], installed_buildid: int = 200):
        self.resources = resources
        self.remote_buildid = remote_buildid
        self.installed_buildid = installed_buildid
        self.calls: List[str] = []

    def ensure_installed(self) -> None:
        self.calls.append("ensure_installed")

    def query_remote_buildid(self) -> Optional[int]:
        self.calls.append("query")
        return self.remote_buildid

    def _install_into(self, install_dir: Path) -> frozenset:
        executable = install_dir / self.resources.executable_name
        executable.write_text("", encoding="utf-8")
        manifest = self.resources.manifest_path(install_dir)
        manifest.parent.mkdir(parents=True, exist_ok=True)
        manifest.write_text(f'"AppState"\n{{\n"buildid" "{self.installed_buildid}"\n}}\n', encoding="utf-8")
        return frozenset({str(executable)})

    def install(self, install_dir: Path) -> frozenset:
        self.calls.append("install")
        return self._install_into(install_dir)

    def update(self, install_dir: Path) -> frozenset:
        self.calls.append("update")
        return self._install_into(install_dir)


def _install(resources: Resources, directory: Path, buildid: int = 100) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    executable = directory / resources.executable_name
    executable.write_text("", encoding="utf-8")
    manifest = resources.manifest_path(directory)
    manifest.parent.mkdir(parents=True, exist_ok=True)
    manifest.write_text(f'"AppState"\n{{\n"buildid" "{buildid}"\n}}\n', encoding="utf-8")
    return executable


def _no_processes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(psutil, "process_iter", lambda attrs=None: iter([]))


def _launch(script: str, startup_timeout: float = 10) -> LaunchOptions:
    return LaunchOptions(
        argv=["-c", script],
        ready_marker="Server startup complete",
        startup_timeout=startup_timeout,
        healthcheck_interval=0.05,
        rcon_port=CLOSED_PORT,
        shutdown_timeout=2,
    )


def _python_game(resources: Resources) -> InstalledNotRunningUpdated:
    return InstalledNotRunningUpdated(resources, Dependency(Path(sys.executable), build_id=100))


READY_SCRIPT = "import time; print('Server startup complete.', flush=True); time.sleep(60)"


#* --- Classification ---
def test_empty_root_is_not_installed(resources: Resources) -> None:
    assert isinstance(classify(resources), NotInstalled)


def test_installed_and_not_running(resources: Resources, monkeypatch: pytest.MonkeyPatch) -> None:
    _no_processes(monkeypatch)
    _install(resources, resources.root_dir / "server", buildid=1234)

    state = classify(resources)

    assert isinstance(state, InstalledNotRunningNotUpdated)
    assert state.game.build_id == 1234
    assert state.game.executable == (resources.root_dir / "server" / "RustDedicated").resolve()


def test_installed_without_manifest_has_no_build_id(resources: Resources, monkeypatch: pytest.MonkeyPatch) -> None:
    _no_processes(monkeypatch)
    (resources.root_dir / "RustDedicated").write_text("", encoding="utf-8")

    state = classify(resources)

    assert isinstance(state, InstalledNotRunningNotUpdated)
    assert state.game.build_id is None


def test_already_running_is_fatal(resources: Resources, monkeypatch: pytest.MonkeyPatch) -> None:
    _install(resources, resources.root_dir)
    procs = [SimpleNamespace(info={"pid": 777, "name": "RustDedicated"})]
    monkeypatch.setattr(psutil, "process_iter", lambda attrs=None: iter(procs))

    with pytest.raises(AlreadyRunningError) as excinfo:
        classify(resources)
    assert excinfo.value.pid == 777
    assert excinfo.value.exit_code == ExitCode.PARALLEL_EXECUTION


def test_two_installations_are_ambiguous(resources: Resources) -> None:
    _install(resources, resources.root_dir / "a")
    _install(resources, resources.root_dir / "b")

    with pytest.raises(AmbiguousInstallationError):
        classify(resources)


def test_game_dependency_adds_plugin_library_path(resources: Resources) -> None:
    game = game_dependency(resources, resources.root_dir)
    assert game.env["LD_LIBRARY_PATH"].endswith(str(resources.root_dir / "RustDedicated_Data" / "Plugins" / "x86_64"))


#* --- Install & update ---
def test_install_end_to_end_with_traced_installer(
    resources: Resources, fake_steamcmd_script: Path, fake_tracer: Callable[..., Dependency]
) -> None:
    executable = resources.root_dir / "RustDedicated"
    manifest = resources.manifest_path(resources.root_dir)
    tracer = fake_tracer(
        trace=f'openat(AT_FDCWD, "{executable}", O_WRONLY|O_CREAT|O_TRUNC, 0755) = 3\n',
        create=[executable],
        contents={manifest: '"AppState"\n{\n"buildid" "4321"\n}\n'},
    )

    state = classify(resources)
    assert isinstance(state, NotInstalled)
    state = state.install_latest_version_from_remote(SteamCmd(resources, URL, tracer=tracer))

    assert isinstance(state, InstalledNotRunningUpdated)
    assert state.game.executable == executable
    assert state.game.build_id == 4321


def test_install_without_executable_fails_verification(resources: Resources) -> None:
    steamcmd = FakeSteamCmd(resources, remote_buildid=None)
    steamcmd.install = lambda install_dir: frozenset()

    with pytest.raises(VerificationError) as excinfo:
        NotInstalled(resources).install_latest_version_from_remote(steamcmd)
    assert excinfo.value.exit_code == ExitCode.INSTALLER_FAILED


def test_verification_checks_the_filesystem_not_the_trace(resources: Resources) -> None:
    executable = resources.root_dir / "RustDedicated"
    with pytest.raises(VerificationError):
        verify_installation(resources, resources.root_dir, frozenset({str(executable)}))


def test_update_is_skipped_when_build_ids_match(resources: Resources) -> None:
    _install(resources, resources.root_dir, buildid=100)
    steamcmd = FakeSteamCmd(resources, remote_buildid=100)

    state = InstalledNotRunningNotUpdated(resources, game_dependency(resources, resources.root_dir))
    updated = state.update_existing_installation_from_remote(steamcmd)

    assert isinstance(updated, InstalledNotRunningUpdated)
    assert updated.game.build_id == 100
    assert "update" not in steamcmd.calls


def test_update_runs_when_build_ids_differ(resources: Resources) -> None:
    _install(resources, resources.root_dir / "server", buildid=100)
    steamcmd = FakeSteamCmd(resources, remote_buildid=200, installed_buildid=200)

    state = InstalledNotRunningNotUpdated(resources, game_dependency(resources, resources.root_dir / "server"))
    updated = state.update_existing_installation_from_remote(steamcmd)

    assert steamcmd.calls == ["ensure_installed", "query", "update"]
    assert updated.game.build_id == 200
    assert updated.game.executable.parent == resources.root_dir / "server"


def test_update_runs_when_remote_build_id_is_unknown(resources: Resources) -> None:
    _install(resources, resources.root_dir, buildid=100)
    steamcmd = FakeSteamCmd(resources, remote_buildid=None)

    state = InstalledNotRunningNotUpdated(resources, game_dependency(resources, resources.root_dir))
    state.update_existing_installation_from_remote(steamcmd)

    assert "update" in steamcmd.calls


def test_state_can_only_be_advanced_once(resources: Resources) -> None:
    _install(resources, resources.root_dir, buildid=100)
    steamcmd = FakeSteamCmd(resources, remote_buildid=100)
    state = InstalledNotRunningNotUpdated(resources, game_dependency(resources, resources.root_dir))

    state.update_existing_installation_from_remote(steamcmd)

    assert state.consumed
    with pytest.raises(StateConsumedError):
        state.update_existing_installation_from_remote(steamcmd)


#* --- Spawn, health check, supervision ---
def test_spawn_health_check_and_stop(resources: Resources) -> None:
    running = _python_game(resources).spawn_game_server_process(_launch(READY_SCRIPT))
    assert isinstance(running, RunningNotHealthy)

    healthy = running.healthcheck_timeout()
    assert isinstance(healthy, RunningHealthy)
    assert healthy.readiness.get_nowait() is GameServerState.PLAYABLE

    commands: "queue.Queue[Command]" = queue.Queue()
    commands.put(Command.STOP)
    assert healthy.wait(commands, poll_interval=0.05) == ExitCode.SUCCESS
    assert healthy.process.poll() is not None


def test_rcon_session_opens_after_health_check(resources: Resources) -> None:
    launch = dataclasses.replace(_launch(READY_SCRIPT), rcon_password="secret", rcon_connect_timeout=3)
    opened = []

    class Socket:
        closed = False

        def close(self) -> None:
            self.closed = True

    def connector(uri, open_timeout=None):
        opened.append((uri, open_timeout))
        return Socket()

    healthy = _python_game(resources).spawn_game_server_process(launch).healthcheck_timeout()
    try:
        with healthy.rcon(connector=connector) as relay:
            socket = relay.websocket
        assert opened == [(f"ws://127.0.0.1:{CLOSED_PORT}/secret", 3)]
        assert socket.closed
        # The readiness signal is consumed by the session.
        assert healthy.readiness.empty()
    finally:
        healthy.stop()
        healthy.process.wait(timeout=5)


def test_server_exiting_during_startup(resources: Resources) -> None:
    running = _python_game(resources).spawn_game_server_process(_launch("raise SystemExit(2)"))

    with pytest.raises(ServerProcessError, match="status 2"):
        running.healthcheck_timeout()


def test_health_check_times_out_and_stops_the_server(resources: Resources) -> None:
    running = _python_game(resources).spawn_game_server_process(_launch("import time; time.sleep(60)", startup_timeout=0.5))

    with pytest.raises(HealthcheckTimeoutError):
        running.healthcheck_timeout()
    assert running.process.wait(timeout=5) is not None


def test_server_crash_after_startup_is_a_failure(resources: Resources) -> None:
    script = "import time; print('Server startup complete.', flush=True); time.sleep(0.3); raise SystemExit(5)"
    healthy = _python_game(resources).spawn_game_server_process(_launch(script)).healthcheck_timeout()

    assert healthy.wait(poll_interval=0.05) == ExitCode.SERVER_FAILED


def test_start_chains_every_transition(resources: Resources) -> None:
    _install(resources, resources.root_dir, buildid=100)
    steamcmd = FakeSteamCmd(resources, remote_buildid=100)
    state = InstalledNotRunningNotUpdated(resources, game_dependency(resources, resources.root_dir))
    # Run a stand-in server instead of the installed (empty) executable.
    state.game = Dependency(Path(sys.executable), build_id=100)
    shared = SharedState()

    healthy = start(state, steamcmd, _launch(READY_SCRIPT), shared)
    try:
        snapshot = shared.snapshot()
        assert snapshot.phase == Phase.RUNNING_HEALTHY.value
        assert snapshot.pid == healthy.pid
        assert snapshot.build_id == 100
    finally:
        healthy.stop()
        healthy.process.wait(timeout=5)


def test_launch_options_from_settings() -> None:
    settings = SimpleNamespace(
        GAME_SERVER_PORT=28015, GAME_SERVER_IDENTITY="main", GAME_SERVER_EXTRA_ARGS=["+server.maxplayers", "50"],
        RCON_HOST="127.0.0.1", RCON_PORT=28016, RCON_PASSWORD="secret", RCON_CONNECT_TIMEOUT=5, RCON_RESPONSE_TIMEOUT=7,
        READY_LOG_MARKER="Server startup complete", GAME_STARTUP_TIMEOUT=900, HEALTHCHECK_INTERVAL=1.0,
        GRACEFUL_SHUTDOWN_TIMEOUT=30,
    )

    launch = LaunchOptions.from_settings(settings)

    assert launch.argv == [
        "-batchmode", "+server.port", "28015", "+server.identity", "main",
        "+rcon.web", "1", "+rcon.port", "28016", "+rcon.password", "secret",
        "+server.maxplayers", "50",
    ]
    assert launch.rcon_response_timeout == 7.0
