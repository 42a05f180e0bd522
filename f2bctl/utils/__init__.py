"""
f2bctl Utilities

Common utility modules for f2bctl.
"""

from .fileio import atomic_write_text
from .locks import RWLock
from .paths import get_data_dir

__all__ = [
    "atomic_write_text",
    "RWLock",
    "get_data_dir",
]
