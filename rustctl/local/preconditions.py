import os
import shutil
import logging
from pathlib import Path
from typing import Iterable
from rustctl.errors import MissingDependencyError, MissingPermissionError

log = logging.getLogger(__name__)


def check_system_dependencies(executables: Iterable[str]) -> None:
    """
    Validates that every required system executable can be found on PATH.

    :param executables: Executable names (or absolute paths) to look up.
    :raises MissingDependencyError: On the first executable that is missing.
    """
    for name in executables:
        path = shutil.which(name)
        if not path:
            log.error(f"CONFIG CHECK FAILED: '{name}' not found on PATH")
            raise MissingDependencyError(name)
        log.info(f"Config Check OK: Found {name} at '{path}'")


def check_root_dir(root_dir: Path) -> None:
    """
    Validates the installation root directory.

    It must exist, be a directory, be owned by the invoking user and be
    readable, writable and traversable by them.

    :param root_dir: The configured installation root.
    :raises MissingPermissionError: If any of the conditions do not hold.
    """
    if not root_dir.is_absolute():
        raise MissingPermissionError(f"root directory '{root_dir}' is not an absolute path")
    if not root_dir.is_dir():
        raise MissingPermissionError(f"root directory '{root_dir}' does not exist or is not a directory")

    owner_uid = root_dir.stat().st_uid
    if owner_uid != os.geteuid():
        raise MissingPermissionError(
            f"root directory '{root_dir}' is owned by uid {owner_uid}, not by the invoking user (uid {os.geteuid()})"
        )
    if not os.access(root_dir, os.R_OK | os.W_OK | os.X_OK):
        raise MissingPermissionError(f"root directory '{root_dir}' is not readable, writable and executable")
    log.info(f"Config Check OK: Root directory '{root_dir}' is usable")


def check_preconditions(settings) -> None:
    """Runs every system precondition check before any state transition."""
    log.info("Performing configuration and precondition validation...")
    check_system_dependencies(settings.REQUIRED_SYSTEM_DEPENDENCIES)
    check_root_dir(Path(settings.ROOT_DIR))
