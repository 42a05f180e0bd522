"""
f2bctl Settings - application settings and the managed host registry.
"""

from .models import AppSettings, generate_callback_secret
from .store import SettingsStore, generate_host_id, normalize_hosts

__all__ = [
    "AppSettings",
    "SettingsStore",
    "generate_callback_secret",
    "generate_host_id",
    "normalize_hosts",
]
