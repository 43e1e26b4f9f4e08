# Copyright (c) 2025 Trae AI. All rights reserved.

import hashlib
import logging
import os
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set
from .errors import FilesystemUnavailableError, PermissionDeniedError
from .models import MediaFile, ScanReport

logger = logging.getLogger(__name__)

FINGERPRINT_CHUNK = 64 * 1024


def fingerprint_file(path: Path, size: Optional[int] = None) -> str:
    """
    Cheap content fingerprint: size plus the first and last 64 KiB.
    Survives renames and moves, changes when the content changes.
    """
    if size is None:
        size = path.stat().st_size
    hasher = hashlib.sha256()
    hasher.update(str(size).encode("ascii"))
    with open(path, "rb") as f:
        if size <= FINGERPRINT_CHUNK * 2:
            hasher.update(f.read())
        else:
            hasher.update(f.read(FINGERPRINT_CHUNK))
            f.seek(size - FINGERPRINT_CHUNK)
            hasher.update(f.read(FINGERPRINT_CHUNK))
    return hasher.hexdigest()


class Scanner:
    """
    Walks root directories and yields video files lazily.
    """

    def __init__(self, video_extensions: List[str], blacklist: List[str] = None):
        self.video_extensions = {ext.lower() for ext in video_extensions}
        self.blacklist = set(blacklist) if blacklist else {"#recycle", "@eaDir", ".DS_Store", "lost+found"}
        self.report = ScanReport()

    def _warn(self, message: str):
        logger.warning(message)
        self.report.warnings.append(message)

    def scan(self, roots: Iterable[Path]) -> Iterator[MediaFile]:
        """
        Yields MediaFiles under every root. Each call starts a fresh scan
        and resets `report`.
        """
        self.report = ScanReport()
        for root in roots:
            root = Path(root)
            try:
                if not root.is_dir():
                    raise FilesystemUnavailableError(root)
                yield from self._walk_root(root)
            except FilesystemUnavailableError as e:
                self._warn(str(e))
                self.report.unavailable_roots.append(e.root)

    def _list_directory(self, directory: Path, root: Path) -> List[os.DirEntry]:
        """
        Entries of one directory in name order. A root that cannot be listed
        raises FilesystemUnavailableError; a locked directory below it raises
        PermissionDeniedError.
        """
        try:
            with os.scandir(directory) as it:
                return sorted(it, key=lambda e: e.name)
        except PermissionError as e:
            if directory == root:
                raise FilesystemUnavailableError(root, "Permission denied on root") from e
            raise PermissionDeniedError(directory) from e
        except FileNotFoundError as e:
            if directory == root:
                raise FilesystemUnavailableError(root, "Root disappeared during scan") from e
            raise
        except OSError as e:
            if directory == root:
                raise FilesystemUnavailableError(root, f"Root not readable ({e})") from e
            raise

    def _walk_root(self, root: Path) -> Iterator[MediaFile]:
        visited: Set[str] = set()
        stack = [root]
        while stack:
            directory = stack.pop()
            try:
                real = os.path.realpath(directory)
            except OSError as e:
                self._warn(f"Cannot resolve {directory}: {e}")
                continue
            if real in visited:
                logger.debug(f"Skipping already visited directory (symlink loop?): {directory}")
                continue
            visited.add(real)

            try:
                entries = self._list_directory(directory, root)
            except PermissionDeniedError as e:
                self._warn(str(e))
                continue
            except FileNotFoundError:
                self._warn(f"Directory disappeared during scan: {directory}")
                continue
            except OSError as e:
                self._warn(f"Cannot list {directory}: {e}")
                continue

            subdirs = []
            for entry in entries:
                if entry.name in self.blacklist:
                    continue
                try:
                    if entry.is_dir(follow_symlinks=True):
                        if not entry.name.startswith("."):
                            subdirs.append(Path(entry.path))
                        continue
                    if not entry.is_file(follow_symlinks=True):
                        continue
                except OSError as e:
                    self._warn(f"Cannot stat {entry.path}: {e}")
                    continue

                try:
                    media_file = self._build_file(Path(entry.path))
                except PermissionDeniedError as e:
                    self._warn(str(e))
                    continue
                if media_file is not None:
                    self.report.files_seen += 1
                    yield media_file

            # Reverse so that the stack pops in name order
            stack.extend(reversed(subdirs))

    def _build_file(self, path: Path) -> Optional[MediaFile]:
        ext = path.suffix.lower()
        if ext not in self.video_extensions:
            return None
        try:
            stat = path.stat()
            fingerprint = fingerprint_file(path, stat.st_size)
        except PermissionError as e:
            raise PermissionDeniedError(path) from e
        except OSError as e:
            self._warn(f"File vanished or unreadable during scan: {path}: {e}")
            return None
        return MediaFile(
            path=path,
            extension=ext,
            size=stat.st_size,
            mtime=stat.st_mtime,
            fingerprint=fingerprint,
        )
