"""
Configurable paths for f2bctl.

The SQLite database lives in the directory returned by get_data_dir(),
which respects:

  1. F2BCTL_DATA_DIR   (explicit override)
  2. XDG_DATA_HOME     (XDG fallback)
  3. ~/.local/share/f2bctl (default)
"""

import os
from pathlib import Path


def get_data_dir() -> Path:
    """Return the f2bctl data directory, configurable via env var."""
    data_dir = os.environ.get("F2BCTL_DATA_DIR")
    if data_dir:
        return Path(data_dir)
    xdg_data = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(xdg_data) / "f2bctl"
