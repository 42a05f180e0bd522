"""
Atomic file writes.

Every file f2bctl persists on a local filesystem is written to a temporary
file in the same directory and renamed over the target, so an interrupted
write never leaves a truncated enforcer configuration behind.
"""

import os
import tempfile
from pathlib import Path
from typing import Union


def atomic_write_text(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """Write ``content`` to ``path`` through a temp file and ``os.replace``."""
    target = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
