# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import threading
from pathlib import Path
from typing import Callable, Iterable, List, Set
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class LibraryRootHandler(FileSystemEventHandler):
    """
    Collects video file changes and fires the callback once things go quiet.
    """

    def __init__(self, callback: Callable[[List[str]], None], video_extensions: Iterable[str],
                 debounce_seconds: float = 30):
        self.callback = callback
        self.video_extensions = {ext.lower() for ext in video_extensions}
        self.debounce_seconds = debounce_seconds
        self.timer = None
        self._lock = threading.Lock()
        self.changes: Set[str] = set()

    def _is_video(self, path: str) -> bool:
        return Path(path).suffix.lower() in self.video_extensions

    def on_created(self, event):
        if not event.is_directory and self._is_video(event.src_path):
            self._trigger(f"Created: {event.src_path}")

    def on_deleted(self, event):
        # Directory deletions may hide many files
        if event.is_directory or self._is_video(event.src_path):
            self._trigger(f"Deleted: {event.src_path}")

    def on_moved(self, event):
        if event.is_directory or self._is_video(event.src_path) or self._is_video(event.dest_path):
            self._trigger(f"Moved: {event.src_path} -> {event.dest_path}")

    def _trigger(self, change_desc: str):
        with self._lock:
            self.changes.add(change_desc)
            if self.timer:
                self.timer.cancel()
            self.timer = threading.Timer(self.debounce_seconds, self._execute_callback)
            self.timer.daemon = True
            self.timer.start()

    def _execute_callback(self):
        with self._lock:
            changes_snapshot = sorted(self.changes)
            self.changes.clear()
            self.timer = None

        logger.info(f"Detected {len(changes_snapshot)} file changes, requesting reconciliation")
        self.callback(changes_snapshot)

    def cancel(self):
        with self._lock:
            if self.timer:
                self.timer.cancel()
                self.timer = None
            self.changes.clear()


class FileWatcher:
    """
    Watches every library root and requests a cycle when video files change.
    Roots that do not exist are skipped.
    """

    def __init__(self, roots: Iterable[Path], callback: Callable[[List[str]], None],
                 video_extensions: Iterable[str], debounce_seconds: float = 30):
        self.roots = [Path(r) for r in roots]
        self.observer = Observer()
        self.handler = LibraryRootHandler(callback, video_extensions, debounce_seconds)
        self.watched: List[Path] = []

    def start(self):
        for root in self.roots:
            if not root.is_dir():
                logger.warning(f"Not watching missing root: {root}")
                continue
            logger.info(f"Starting FileWatcher on {root}...")
            self.observer.schedule(self.handler, str(root), recursive=True)
            self.watched.append(root)
        self.observer.start()

    def stop(self):
        self.handler.cancel()
        self.observer.stop()
        self.observer.join()
