"""
Dashboard web service: a Starlette app exposing the supervised game server's
snapshot over HTTP and a WebSocket, served by Hypercorn.
"""

from .setup import create_app
from .server import DashboardServer

__all__ = ["create_app", "DashboardServer"]
