"""
f2bctl Storage - SQLite persistence for events, hosts and settings.
"""

from .database import ControlPlaneStore

__all__ = ["ControlPlaneStore"]
