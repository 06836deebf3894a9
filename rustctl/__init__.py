"""
rustctl: supervises the lifecycle of a Rust dedicated game server.
"""

__version__ = "0.1.0"
