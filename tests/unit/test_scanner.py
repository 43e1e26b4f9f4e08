# Copyright (c) 2025 Trae AI. All rights reserved.

import os
import pytest
from pathlib import Path
from unittest.mock import patch
from reelkeeper.core.errors import PermissionDeniedError
from reelkeeper.core.scanner import Scanner, fingerprint_file


@pytest.fixture
def scanner():
    return Scanner([".mkv", ".mp4"])


def write(path: Path, content: bytes = b"video") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def test_scan_filters_extensions_and_skips_junk(scanner, tmp_path):
    write(tmp_path / "Movie (2010)" / "Movie.2010.mkv")
    write(tmp_path / "Movie (2010)" / "Movie.2010.srt")
    write(tmp_path / "Show" / "Season 1" / "Show.S01E01.MP4")
    write(tmp_path / "#recycle" / "Old.mkv")
    write(tmp_path / "@eaDir" / "thumb.mkv")
    write(tmp_path / ".hidden" / "Secret.mkv")

    files = list(scanner.scan([tmp_path]))

    names = sorted(f.path.name for f in files)
    assert names == ["Movie.2010.mkv", "Show.S01E01.MP4"]
    assert all(f.fingerprint for f in files)
    assert {f.extension for f in files} == {".mkv", ".mp4"}
    assert scanner.report.files_seen == 2
    assert scanner.report.warnings == []


def test_missing_root_is_reported_not_fatal(scanner, tmp_path):
    write(tmp_path / "ok" / "A.mkv")
    missing = tmp_path / "unmounted"

    files = list(scanner.scan([missing, tmp_path / "ok"]))

    assert [f.path.name for f in files] == ["A.mkv"]
    assert scanner.report.unavailable_roots == [missing]
    assert len(scanner.report.warnings) == 1


def test_fingerprint_survives_rename(tmp_path):
    original = write(tmp_path / "a.mkv", b"x" * 1000)
    before = fingerprint_file(original)

    moved = tmp_path / "sub" / "b.mkv"
    moved.parent.mkdir()
    original.rename(moved)

    assert fingerprint_file(moved) == before


def test_fingerprint_differs_for_different_content(tmp_path):
    a = write(tmp_path / "a.mkv", b"a" * 200_000)
    b = write(tmp_path / "b.mkv", b"a" * 199_999 + b"b")

    assert fingerprint_file(a) != fingerprint_file(b)


def test_symlink_loop_terminates(scanner, tmp_path):
    write(tmp_path / "dir" / "A.mkv")
    try:
        os.symlink(tmp_path / "dir", tmp_path / "dir" / "loop")
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported")

    files = list(scanner.scan([tmp_path]))

    assert [f.path.name for f in files] == ["A.mkv"]


def test_permission_denied_directory_is_skipped(scanner, tmp_path):
    write(tmp_path / "open" / "A.mkv")
    write(tmp_path / "locked" / "B.mkv")
    real_scandir = os.scandir

    def fake_scandir(path):
        if Path(path).name == "locked":
            raise PermissionError("denied")
        return real_scandir(path)

    with patch("reelkeeper.core.scanner.os.scandir", side_effect=fake_scandir):
        files = list(scanner.scan([tmp_path]))

    assert [f.path.name for f in files] == ["A.mkv"]
    assert any("Permission denied" in w for w in scanner.report.warnings)
    assert scanner.report.unavailable_roots == []


def test_each_scan_starts_fresh(scanner, tmp_path):
    list(scanner.scan([tmp_path / "missing"]))
    assert scanner.report.unavailable_roots

    list(scanner.scan([tmp_path]))
    assert scanner.report.unavailable_roots == []


def test_unreadable_root_is_unavailable(scanner, tmp_path):
    write(tmp_path / "A.mkv")

    with patch("reelkeeper.core.scanner.os.scandir", side_effect=PermissionError("denied")):
        files = list(scanner.scan([tmp_path]))

    assert files == []
    assert scanner.report.unavailable_roots == [tmp_path]
    assert scanner.report.warnings == [f"Permission denied on root: {tmp_path}"]


def test_locked_directory_raises_permission_denied(scanner, tmp_path):
    locked = tmp_path / "locked"
    locked.mkdir()

    with patch("reelkeeper.core.scanner.os.scandir", side_effect=PermissionError("denied")):
        with pytest.raises(PermissionDeniedError) as exc:
            scanner._list_directory(locked, tmp_path)
    assert exc.value.path == locked


def test_unreadable_file_is_skipped(scanner, tmp_path):
    write(tmp_path / "A.mkv")
    locked = write(tmp_path / "B.mkv")
    real_fingerprint = fingerprint_file

    def fake_fingerprint(path, size=None):
        if path == locked:
            raise PermissionError("denied")
        return real_fingerprint(path, size)

    with patch("reelkeeper.core.scanner.fingerprint_file", side_effect=fake_fingerprint):
        files = list(scanner.scan([tmp_path]))

    assert [f.path.name for f in files] == ["A.mkv"]
    assert scanner.report.warnings == [f"Permission denied: {locked}"]
    assert scanner.report.unavailable_roots == []
