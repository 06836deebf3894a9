"""
This module contains the default configuration settings for rustctl.
It defines paths, the supervised game server's resources, the distribution tool,
RCON, health checking, logging and the dashboard web service.
Values may be overridden with environment variables (or a .env file) and, for the
keys listed in MODIFIABLE_SETTINGS, with the TOML config file.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Config File ---
CONFIG_FILE_PATH = pathlib.Path(os.getenv("RUSTCTL_CONFIG", "/etc/rustctl/config.toml"))

#* --- Installation Root ---
# SteamCMD and the game server are both installed under this directory.
ROOT_DIR = pathlib.Path(os.getenv("RUSTCTL_ROOT_DIR", "/srv/rustctl"))

#* --- Supervised Game Server ---
GAME_EXECUTABLE_NAME = "RustDedicated"
STEAM_APP_ID = int(os.getenv("RUSTCTL_STEAM_APP_ID", "258550"))
# Relative to ROOT_DIR. SteamCMD answers app_info queries with stale data while this exists.
APP_INFO_CACHE_RELPATH = pathlib.Path("steamcmd") / "appcache" / "appinfo.vdf"

#* --- Discovery ---
SEARCH_ROOT = pathlib.Path(os.getenv("RUSTCTL_SEARCH_ROOT", "/"))
# On WSL, /mnt/c is painfully slow to traverse.
SEARCH_EXCLUSIONS = [p for p in os.getenv("RUSTCTL_SEARCH_EXCLUSIONS", "/proc:/sys:/mnt/c").split(":") if p]

#* --- Distribution Tool (SteamCMD) ---
STEAMCMD_DOWNLOAD_URL = os.getenv(
    "STEAMCMD_DOWNLOAD_URL",
    "https://steamcdn-a.akamaihd.net/client/installer/steamcmd_linux.tar.gz",
)
STEAMCMD_DIR_NAME = "steamcmd"
STEAMCMD_ENTRY_POINT = "steamcmd.sh"
DOWNLOAD_TIMEOUT = 30  # seconds

#* --- System Call Tracer ---
STRACE_EXECUTABLE = os.getenv("STRACE_EXECUTABLE", "strace")
REQUIRED_SYSTEM_DEPENDENCIES = [STRACE_EXECUTABLE]

#* --- Game Server Process ---
GAME_SERVER_PORT = int(os.getenv("GAME_SERVER_PORT", "28015"))
GAME_SERVER_IDENTITY = os.getenv("GAME_SERVER_IDENTITY", "rustctl")
GAME_SERVER_EXTRA_ARGS = os.getenv("GAME_SERVER_EXTRA_ARGS", "").split()
READY_LOG_MARKER = "Server startup complete"
GAME_STARTUP_TIMEOUT = int(os.getenv("GAME_STARTUP_TIMEOUT", "900"))  # seconds
HEALTHCHECK_INTERVAL = 1.0  # seconds
GRACEFUL_SHUTDOWN_TIMEOUT = 30  # seconds before force-killing

#* --- RCON ---
RCON_HOST = "127.0.0.1"
RCON_PORT = int(os.getenv("RCON_PORT", "28016"))
RCON_PASSWORD = os.getenv("RCON_PASSWORD", "")
RCON_CONNECT_TIMEOUT = 10   # seconds
RCON_RESPONSE_TIMEOUT = 10  # seconds

#* --- Dashboard Web Service ---
WEB_ENABLED = os.getenv("WEB_ENABLED", "True").lower() in ('true', '1', 't')
WEB_SERVER_HOST = os.getenv("WEB_SERVER_HOST", "0.0.0.0")
WEB_SERVER_PORT = int(os.getenv("WEB_SERVER_PORT", "8080"))
INTERVAL_MONITOR_SYSTEM = 0.5  # seconds
INTERVAL_SYNC_CLIENT = 0.2     # seconds

#* --- Grafana Loki (for observability) ---
LOKI_ENABLED = os.getenv("LOKI_ENABLED", "False").lower() in ('true', '1', 't')
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")
LOG_BUFFER_FLUSH_INTERVAL = 10

#* --- Application variables ---
VERBOSE_LOGGING = False

#* --- MODIFIABLE SETTINGS (Changeable via the TOML config file) ---
MODIFIABLE_SETTINGS = {
    "ROOT_DIR", "STEAMCMD_DOWNLOAD_URL", "STEAM_APP_ID",
    "SEARCH_ROOT", "SEARCH_EXCLUSIONS",
    "GAME_SERVER_PORT", "GAME_SERVER_IDENTITY", "GAME_SERVER_EXTRA_ARGS",
    "GAME_STARTUP_TIMEOUT", "HEALTHCHECK_INTERVAL", "READY_LOG_MARKER",
    "RCON_PORT", "RCON_PASSWORD", "RCON_RESPONSE_TIMEOUT",
    "WEB_ENABLED", "WEB_SERVER_HOST", "WEB_SERVER_PORT",
    "LOKI_ENABLED", "LOKI_URL", "LOKI_ORG_ID",
}
