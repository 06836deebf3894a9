"""
Local package for rustctl.

This package provides application-level configuration through the app_globals
module and the checks that must pass before the lifecycle workflow may begin.
"""

from .global_config import app_globals

__all__ = ["app_globals"]
