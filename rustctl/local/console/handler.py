import json
import logging
from pathlib import Path
from typing import List, Optional
from rustctl.errors import AlreadyRunningError, ExitCode
from rustctl.game import Phase, SharedState, build_resources
from rustctl.game.lifecycle import classify, start
from rustctl.game.snapshot import ResourceMonitor
from rustctl.game.state import LaunchOptions
from rustctl.local import app_globals
from rustctl.local.preconditions import check_preconditions
from rustctl.log import set_console_level
from rustctl.steam import SteamCmd
from rustctl.system.process_utils import Dependency

log = logging.getLogger(__name__)


def _installed_game(state) -> Optional[Dependency]:
    return getattr(state, "game", None)


def apply_exclusions(directories: List[str]) -> None:
    """Adds directories to the ones skipped while searching for an existing installation."""
    if not directories:
        return
    exclusions = list(app_globals.SEARCH_EXCLUSIONS)
    exclusions.extend(str(Path(d).resolve()) for d in directories)
    app_globals.set("SEARCH_EXCLUSIONS", exclusions)
    log.debug(f"Search exclusions: {exclusions}")


def enable_verbose_logging() -> None:
    app_globals.set("VERBOSE_LOGGING", True)
    set_console_level(logging.DEBUG)
    log.debug("Verbose console logging is ON.")


def build_steamcmd(resources) -> SteamCmd:
    return SteamCmd(
        resources,
        download_url=app_globals.STEAMCMD_DOWNLOAD_URL,
        tracer=Dependency(Path(app_globals.STRACE_EXECUTABLE)),
        download_timeout=app_globals.DOWNLOAD_TIMEOUT,
        dir_name=app_globals.STEAMCMD_DIR_NAME,
        entry_point=app_globals.STEAMCMD_ENTRY_POINT,
    )


def handle_start_command() -> int:
    """
    Brings the game server up (installing or updating it first) and supervises
    it until it exits.
    """
    check_preconditions(app_globals)
    resources = build_resources(app_globals)
    shared = SharedState()

    dashboard = None
    if app_globals.WEB_ENABLED:
        # Imported here so the other commands never pull in the web stack.
        from rustctl.web import DashboardServer
        dashboard = DashboardServer(
            shared, app_globals.WEB_SERVER_HOST, app_globals.WEB_SERVER_PORT, app_globals.INTERVAL_SYNC_CLIENT
        )
        dashboard.start()

    monitor = ResourceMonitor(shared, app_globals.INTERVAL_MONITOR_SYSTEM)
    monitor.start()
    try:
        state = classify(resources)
        game = _installed_game(state)
        shared.set_phase(state.phase, build_id=game.build_id if game else None)
        server = start(state, build_steamcmd(resources), LaunchOptions.from_settings(app_globals), shared)
        exit_code = server.wait(shared.commands)
        shared.clear_pid()
        shared.set_phase(Phase.STOPPED if exit_code == ExitCode.SUCCESS else Phase.FAILED)
        return exit_code
    except Exception:
        shared.set_phase(Phase.FAILED)
        raise
    finally:
        monitor.stop()
        if dashboard is not None:
            dashboard.stop()


def display_status() -> int:
    """Classifies the current installation without changing anything and prints it."""
    resources = build_resources(app_globals)
    shared = SharedState()
    try:
        state = classify(resources)
        game = _installed_game(state)
        shared.set_phase(state.phase, build_id=game.build_id if game else None)
        location = game.executable.parent if game else None
    except AlreadyRunningError as e:
        # Not started by us, so its health is unknown.
        log.warning(str(e))
        shared.set_phase(Phase.UNKNOWN, pid=e.pid)
        location = None

    print("\n--- Game Server Status ---")
    for key, value in shared.snapshot().to_dict().items():
        if value is not None:
            print(f"  {key:<12} : {value}")
    if location:
        print(f"  {'location':<12} : {location}")
    print("-" * 26 + "\n")
    return ExitCode.SUCCESS


def check_configuration() -> int:
    """Prints the effective settings and validates the system preconditions."""
    print("\n--- Effective Configuration ---")
    settings = app_globals.get_all_settings()
    for key in sorted(app_globals.MODIFIABLE_SETTINGS):
        value = "***" if key == "RCON_PASSWORD" and settings.get(key) else settings.get(key)
        print(f"  {key} = {json.dumps(value, default=str)}")
    print("-------------------------------\n")
    check_preconditions(app_globals)
    log.info("All precondition checks passed.")
    return ExitCode.SUCCESS


def print_help() -> int:
    """Prints the main help text for the console."""
    print("\nUsage: python -m rustctl <command> [--verbose] [--exclude DIR]...")
    print("\nAvailable commands:")
    print("  start                  - Install or update the game server, start it and supervise it until it exits.")
    print("  status                 - Show whether the game server is installed, its build ID and whether it runs.")
    print("  check-config           - Show the effective configuration and validate the system preconditions.")
    print("  help                   - Show this help message.")
    print("\nOptions:")
    print("  --verbose              - Show DEBUG log output in the console.")
    print("  --exclude DIR          - Skip DIR while searching for an existing installation (repeatable).")
    print()
    return ExitCode.SUCCESS
