"""Tests for atomic_write and directory fsync.

The cursor store relies on these for crash safety: the file on disk is
always either the old or the new watermark.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from mailbridge.fileutil import atomic_write, fsync_directory


class TestAtomicWrite:
    """Verify atomic_write() crash-safety and correctness."""

    def test_writes_content_to_new_file(self, tmp_path: Path) -> None:
        target = tmp_path / "kv.json"
        atomic_write(target, '{"lastSeenUid": 12}')
        assert json.loads(target.read_text()) == {"lastSeenUid": 12}

    def test_overwrites_existing_file(self, tmp_path: Path) -> None:
        target = tmp_path / "kv.json"
        target.write_text('{"lastSeenUid": 1}')
        atomic_write(target, '{"lastSeenUid": 2}')
        assert json.loads(target.read_text()) == {"lastSeenUid": 2}

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        target = tmp_path / "state" / "kv.json"
        atomic_write(target, "{}")
        assert target.read_text() == "{}"

    def test_preserves_original_on_replace_failure(self, tmp_path: Path) -> None:
        target = tmp_path / "kv.json"
        target.write_text('{"lastSeenUid": 7}')

        with (
            patch("mailbridge.fileutil.os.replace", side_effect=OSError("disk full")),
            pytest.raises(OSError, match="disk full"),
        ):
            atomic_write(target, '{"lastSeenUid": 8}')

        assert json.loads(target.read_text()) == {"lastSeenUid": 7}

    def test_cleans_up_temp_file_on_failure(self, tmp_path: Path) -> None:
        target = tmp_path / "kv.json"

        with (
            patch("mailbridge.fileutil.os.replace", side_effect=OSError("disk full")),
            pytest.raises(OSError),
        ):
            atomic_write(target, "{}")

        tmp_files = list(tmp_path.glob("*.tmp"))
        assert tmp_files == [], f"Temp files not cleaned up: {tmp_files}"

    def test_preserves_original_on_fsync_failure(self, tmp_path: Path) -> None:
        target = tmp_path / "kv.json"
        target.write_text("original")

        with (
            patch("mailbridge.fileutil.os.fsync", side_effect=OSError("io error")),
            pytest.raises(OSError, match="io error"),
        ):
            atomic_write(target, "replacement")

        assert target.read_text() == "original"
        assert list(tmp_path.glob("*.tmp")) == []

    def test_fsyncs_directory_after_replace(self, tmp_path: Path) -> None:
        target = tmp_path / "kv.json"
        with patch("mailbridge.fileutil.fsync_directory") as fsync_dir:
            atomic_write(target, "{}")
        fsync_dir.assert_called_once_with(tmp_path)


class TestFsyncDirectory:
    def test_fsyncs_existing_directory(self, tmp_path: Path) -> None:
        fsync_directory(tmp_path)

    def test_ignores_fsync_refusal(self, tmp_path: Path) -> None:
        with patch("mailbridge.fileutil.os.fsync", side_effect=OSError("EINVAL")):
            fsync_directory(tmp_path)

    def test_skips_when_directory_cannot_be_opened(self, tmp_path: Path) -> None:
        with patch("mailbridge.fileutil.os.open", side_effect=PermissionError):
            fsync_directory(tmp_path)
