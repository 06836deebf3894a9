import os
import stat
import psutil
import logging
from pathlib import Path
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Iterable, List, Optional
from rustctl.errors import AmbiguousInstallationError, ProcessTableError, RunningInParallelError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FoundFile:
    """A file located by a filesystem search."""
    directory: Path
    filename: str
    last_modified: datetime
    metadata: os.stat_result

    @property
    def path(self) -> Path:
        return self.directory / self.filename

    @classmethod
    def check(cls, path: Path) -> "FoundFile":
        """Resolves an existing file into a FoundFile. Raises OSError if it does not exist."""
        absolute = path.resolve(strict=True)
        metadata = absolute.stat()
        return cls(
            directory=absolute.parent,
            filename=absolute.name,
            last_modified=datetime.fromtimestamp(metadata.st_mtime, tz=timezone.utc),
            metadata=metadata,
        )


def _is_excluded(path: str, exclusions: List[str]) -> bool:
    return any(path == ex or path.startswith(ex.rstrip("/") + "/") for ex in exclusions)


def find_single_file(name: str, exclusions: Iterable[str] = (), search_root: Path = Path("/")) -> Optional[FoundFile]:
    """
    Searches a directory tree for exactly one regular file named `name`.

    Symlinks are not followed. Directories that cannot be read are skipped.

    :param name: The exact file name (not a path) to look for.
    :param exclusions: Absolute path prefixes whose subtrees are not searched.
    :param search_root: Where the search starts. Defaults to the whole filesystem.
    :return: The found file, or None if there is no such file.
    :raises AmbiguousInstallationError: As soon as a second match is seen.
    """
    excluded = [os.path.abspath(str(ex)) for ex in exclusions]
    root = os.path.abspath(str(search_root))
    if not excluded:
        log.debug(f"Doing a full search under '{root}' for a file named {name}... This might take a while")

    matches: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root, topdown=True, onerror=None, followlinks=False):
        # Prune in place so os.walk never descends into excluded subtrees.
        dirnames[:] = [d for d in dirnames if not _is_excluded(os.path.join(dirpath, d), excluded)]

        if name not in filenames:
            continue
        candidate = os.path.join(dirpath, name)
        try:
            if not stat.S_ISREG(os.lstat(candidate).st_mode):
                continue
        except OSError:
            continue

        matches.append(candidate)
        if len(matches) > 1:
            raise AmbiguousInstallationError(matches)

    if not matches:
        log.debug(f"No file named {name} found under '{root}'.")
        return None
    return FoundFile.check(Path(matches[0]))


def check_process_running(executable_name: str) -> Optional[int]:
    """
    Looks up the live process table for a process whose command name is exactly `executable_name`.

    :return: The process ID of the single match, or None if not running.
    :raises RunningInParallelError: If more than one process matches.
    :raises ProcessTableError: If the process table cannot be enumerated.
    """
    matching_pids: List[int] = []
    try:
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                if proc.info["name"] == executable_name:
                    matching_pids.append(proc.info["pid"])
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
    except psutil.Error as e:
        raise ProcessTableError(f"cannot enumerate the process table: {e}") from e

    if not matching_pids:
        return None
    if len(matching_pids) == 1:
        return matching_pids[0]
    raise RunningInParallelError(executable_name, matching_pids)
