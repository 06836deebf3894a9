"""
System resources abstractions: searching the filesystem, looking up the
process table, running external executables and tracing what they change.
"""
from .discovery import FoundFile, check_process_running, find_single_file
from .process_utils import Dependency
from .tracing import parse_touched_paths, run_traced

__all__ = [
    "FoundFile", "check_process_running", "find_single_file",
    "Dependency", "parse_touched_paths", "run_traced",
]
