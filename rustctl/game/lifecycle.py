import logging
from typing import Optional, Union
from rustctl.errors import AlreadyRunningError
from rustctl.game.resources import Resources
from rustctl.game.snapshot import Phase, SharedState
from rustctl.game.state import (
    Game,
    InstalledNotRunningNotUpdated,
    InstalledNotRunningUpdated,
    LaunchOptions,
    NotInstalled,
    RunningHealthy,
    RunningNotHealthy,
    game_dependency,
)
from rustctl.steam.steamcmd import SteamCmd
from rustctl.system.discovery import check_process_running, find_single_file

log = logging.getLogger(__name__)


def classify(resources: Resources) -> Union[NotInstalled, InstalledNotRunningNotUpdated]:
    """
    Determines the initial lifecycle state from the filesystem and the process table.

    Only the two "not running" states can be produced here; the later ones are
    reachable through transitions only.

    :raises AmbiguousInstallationError: If more than one game server executable exists.
    :raises AlreadyRunningError: If the game server is already running.
    :raises RunningInParallelError: If several game server processes are running.
    """
    log.info(f"Looking for an existing {resources.executable_name} installation...")
    found = find_single_file(resources.executable_name, resources.search_exclusions, resources.search_root)
    if found is None:
        log.info(f"{resources.executable_name} is not installed.")
        return NotInstalled(resources)

    log.info(f"Found {resources.executable_name} in '{found.directory}' (modified {found.last_modified:%Y-%m-%d %H:%M:%S} UTC).")
    pid = check_process_running(resources.executable_name)
    if pid is not None:
        raise AlreadyRunningError(pid)

    game = game_dependency(resources, found.directory)
    if game.build_id is None:
        log.warning(f"No build ID found in '{resources.manifest_path(found.directory)}'. The installation will be updated.")
    return InstalledNotRunningNotUpdated(resources, game)


def start(
    state: Game,
    steamcmd: SteamCmd,
    launch: LaunchOptions,
    shared: Optional[SharedState] = None,
) -> RunningHealthy:
    """
    Advances any lifecycle state to RunningHealthy, installing or updating first when needed.

    :param state: The current (unconsumed) lifecycle state, usually from `classify`.
    :param shared: Receives the phase changes for observers such as the dashboard.
    :return: The healthy, running game server.
    """
    shared = shared or SharedState()

    if isinstance(state, NotInstalled):
        shared.set_phase(Phase.INSTALLING)
        state = state.install_latest_version_from_remote(steamcmd)
    elif isinstance(state, InstalledNotRunningNotUpdated):
        shared.set_phase(Phase.UPDATING, build_id=state.game.build_id)
        state = state.update_existing_installation_from_remote(steamcmd)

    if isinstance(state, InstalledNotRunningUpdated):
        shared.set_phase(state.phase, build_id=state.game.build_id)
        state = state.spawn_game_server_process(launch)

    if isinstance(state, RunningNotHealthy):
        shared.set_phase(state.phase, pid=state.process.pid)
        state = state.healthcheck_timeout()

    shared.set_phase(state.phase, pid=state.pid)
    log.info(f"Game server is up and healthy (PID {state.pid}, build ID {state.game.build_id}).")
    return state
