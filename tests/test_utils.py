"""
Tests for f2bctl/utils/ modules.

Covers:
- atomic_write_text (temp file plus rename)
- RWLock (shared readers, exclusive writer)
- get_data_dir (environment overrides)
"""

import os
import stat
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from f2bctl.utils import RWLock, atomic_write_text, get_data_dir


class TestAtomicWrite:
    def test_writes_and_replaces(self, temp_dir):
        target = temp_dir / "jail.local"
        atomic_write_text(target, "first\n")
        atomic_write_text(target, "second\n")
        assert target.read_text() == "second\n"
        assert os.listdir(temp_dir) == ["jail.local"]

    def test_mode(self, temp_dir):
        target = temp_dir / "action.conf"
        atomic_write_text(target, "x", mode=0o600)
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    def test_failed_replace_leaves_target_intact(self, temp_dir):
        target = temp_dir / "jail.local"
        target.write_text("original")
        with patch("f2bctl.utils.fileio.os.replace", side_effect=OSError("read-only")):
            with pytest.raises(OSError):
                atomic_write_text(target, "new")
        assert target.read_text() == "original"
        assert os.listdir(temp_dir) == ["jail.local"]


class TestRWLock:
    def test_readers_share(self):
        lock = RWLock()
        with lock.read():
            acquired = threading.Event()

            def reader():
                with lock.read():
                    acquired.set()

            thread = threading.Thread(target=reader)
            thread.start()
            assert acquired.wait(1.0)
            thread.join()

    def test_writer_excludes_readers(self):
        lock = RWLock()
        order = []

        def reader():
            with lock.read():
                order.append("read")

        with lock.write():
            thread = threading.Thread(target=reader)
            thread.start()
            time.sleep(0.05)
            order.append("write")
        thread.join()
        assert order == ["write", "read"]

    def test_waiting_writer_blocks_new_readers(self):
        lock = RWLock()
        order = []
        lock.acquire_read()

        def writer():
            with lock.write():
                order.append("write")

        def late_reader():
            with lock.read():
                order.append("read")

        writer_thread = threading.Thread(target=writer)
        writer_thread.start()
        time.sleep(0.05)
        reader_thread = threading.Thread(target=late_reader)
        reader_thread.start()
        time.sleep(0.05)
        assert order == []

        lock.release_read()
        writer_thread.join(1.0)
        reader_thread.join(1.0)
        assert order == ["write", "read"]


class TestDataDir:
    def test_explicit_override(self, monkeypatch, temp_dir):
        monkeypatch.setenv("F2BCTL_DATA_DIR", str(temp_dir))
        assert get_data_dir() == temp_dir

    def test_xdg_fallback(self, monkeypatch, temp_dir):
        monkeypatch.delenv("F2BCTL_DATA_DIR", raising=False)
        monkeypatch.setenv("XDG_DATA_HOME", str(temp_dir))
        assert get_data_dir() == temp_dir / "f2bctl"

    def test_home_default(self, monkeypatch):
        monkeypatch.delenv("F2BCTL_DATA_DIR", raising=False)
        monkeypatch.delenv("XDG_DATA_HOME", raising=False)
        assert get_data_dir() == Path(os.path.expanduser("~/.local/share")) / "f2bctl"
