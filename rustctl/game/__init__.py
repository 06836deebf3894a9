"""
The supervised game server: its resources, lifecycle states, health check and
the shared snapshot observed by the dashboard.
"""
from .resources import Resources, build_resources
from .snapshot import Command, Phase, SharedState, Snapshot

__all__ = ["Resources", "build_resources", "Command", "Phase", "SharedState", "Snapshot"]
