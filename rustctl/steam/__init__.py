"""
Utilities for handling Steam stuff: parsing SteamCMD's non-standard text
format and driving SteamCMD to install and update the game server.
"""
from .buildid import parse_buildid, read_buildid_from_file
from .steamcmd import SteamCmd

__all__ = ["parse_buildid", "read_buildid_from_file", "SteamCmd"]
