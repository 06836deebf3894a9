"""
RCON package: the WebRCON client used to send commands to the running game server.
"""
from .relay import RCONMessage, RconRelay

__all__ = ["RCONMessage", "RconRelay"]
