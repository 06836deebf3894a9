import logging
from typing import List
from rustctl.errors import ExitCode
from rustctl.local.console.handler import (
    apply_exclusions,
    check_configuration,
    display_status,
    enable_verbose_logging,
    handle_start_command,
    print_help,
)

log = logging.getLogger(__name__)


def parse_options(args: List[str]) -> List[str]:
    """
    Applies the global options (--verbose, --exclude DIR) and returns the
    remaining arguments.
    """
    remaining: List[str] = []
    exclusions: List[str] = []
    it = iter(args)
    for arg in it:
        if arg == "--verbose":
            enable_verbose_logging()
        elif arg == "--exclude":
            directory = next(it, None)
            if directory is None:
                raise ValueError("--exclude requires a directory")
            exclusions.append(directory)
        elif arg.startswith("--exclude="):
            exclusions.append(arg.split("=", 1)[1])
        else:
            remaining.append(arg)
    apply_exclusions(exclusions)
    return remaining


def execute_command(command: str, args: List[str]) -> int:
    """
    Executes a single command from the user.

    :param command: The main command string (e.g., 'start', 'status').
    :param args: A list of arguments for the command.
    :return int: The process exit code.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    try:
        args = parse_options(args)
    except ValueError as e:
        log.error(str(e))
        return ExitCode.FAILURE
    if args:
        log.warning(f"Ignoring unexpected arguments: {' '.join(args)}")

    command_map = {
        "start": handle_start_command,
        "status": display_status,
        "check-config": check_configuration,
        "help": print_help,
    }
    if command not in command_map:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return ExitCode.FAILURE
    return command_map[command]()
