"""
Error cases of rustctl.

Every fatal condition of the lifecycle workflow is a RustctlError subclass
carrying the process exit code the console reports for it.
"""
from enum import IntEnum
from typing import List, Optional


class ExitCode(IntEnum):
    """The program's machine-readable status signal."""
    SUCCESS = 0
    FAILURE = 1
    PRECONDITION_FAILED = 10
    PARALLEL_EXECUTION = 11
    INSTALLER_FAILED = 12
    SERVER_FAILED = 13


class RustctlError(Exception):
    """Base class for all fatal errors of the workflow."""
    exit_code: ExitCode = ExitCode.FAILURE


#* --- Preconditions ---
class PreconditionError(RustctlError):
    exit_code = ExitCode.PRECONDITION_FAILED


class MissingDependencyError(PreconditionError):
    def __init__(self, dependency: str):
        self.dependency = dependency
        super().__init__(f"precondition not met: dependency missing: {dependency}")


class MissingPermissionError(PreconditionError):
    def __init__(self, permission: str):
        self.permission = permission
        super().__init__(f"precondition not met: insufficient permissions: {permission}")


class AmbiguousInstallationError(PreconditionError):
    def __init__(self, paths: List[str]):
        self.paths = list(paths)
        super().__init__(
            f"ambiguous installation: found in {len(self.paths)} places: {', '.join(self.paths)}"
        )


#* --- Conflicts ---
class ConflictError(RustctlError):
    exit_code = ExitCode.PARALLEL_EXECUTION


class AlreadyRunningError(ConflictError):
    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"there is already a game server process running: process ID {pid}")


class RunningInParallelError(ConflictError):
    def __init__(self, name: str, pids: List[int]):
        self.name = name
        self.pids = list(pids)
        super().__init__(
            f"'{name}' is running in parallel: process IDs {', '.join(str(p) for p in self.pids)}"
        )


class ProcessTableError(RustctlError):
    """The process table could not be enumerated."""


#* --- External tools ---
class ExecError(RustctlError):
    """Executing a dependency command failed."""
    exit_code = ExitCode.INSTALLER_FAILED

    def __init__(self, command: str, status: Optional[int] = None, stderr: Optional[str] = None):
        self.command = command
        self.status = status
        self.stderr = stderr
        status_text = f"with status {status}" if status is not None else "without status"
        message = f"command failed {status_text}: {command}"
        if stderr:
            message += f"\n{stderr}"
        super().__init__(message)


class TracerSpawnError(ExecError):
    """The system call tracer could not be started."""


class TracerExitError(ExecError):
    """The traced command (or the tracer itself) exited non-zero."""


class TracerOutputError(ExecError):
    """The tracer's output could not be read or decoded as text."""


class DownloadError(RustctlError):
    exit_code = ExitCode.INSTALLER_FAILED


class VerificationError(RustctlError):
    """An install/update claimed success but the filesystem disagrees."""
    exit_code = ExitCode.INSTALLER_FAILED


#* --- Game server ---
class ServerProcessError(RustctlError):
    exit_code = ExitCode.SERVER_FAILED


class HealthcheckTimeoutError(ServerProcessError):
    pass


class ReadinessTimeoutError(ServerProcessError):
    pass


class RconProtocolError(ServerProcessError):
    pass


class RconTimeoutError(ServerProcessError):
    pass


#* --- State machine ---
class StateConsumedError(RustctlError):
    """A lifecycle state was advanced more than once."""
