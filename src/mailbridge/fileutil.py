"""File utilities for mailbridge.

Provides atomic_write() for crash-safe file persistence.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path


def fsync_directory(path: Path) -> None:
    """Flush a directory entry so a rename inside it survives power loss.

    No-op on platforms that cannot open directories (Windows).
    """
    try:
        fd = os.open(path, os.O_RDONLY)
    except (PermissionError, IsADirectoryError):
        return
    try:
        # Some filesystems refuse fsync on directories (certain network mounts)
        with contextlib.suppress(OSError):
            os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write(path: Path, content: str) -> None:
    """Write content to *path* atomically via temp-file + rename.

    Guarantees that *path* is never left in a truncated or partially-written
    state.  On success the file contains exactly *content* and both the file
    data and the directory entry have been fsynced, so the write survives a
    process kill or power loss immediately after this function returns.
    On any failure the previous file (if any) is untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = -1  # os.fdopen owns the fd now
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if fd >= 0:
            os.close(fd)
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise
    fsync_directory(path.parent)
