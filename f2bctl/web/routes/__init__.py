"""
API Routes

FastAPI route handlers for the f2bctl web interface.
"""

from . import callbacks, events, filters, jails, servers, system

__all__ = [
    "callbacks",
    "events",
    "filters",
    "jails",
    "servers",
    "system",
]
