# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import threading
import time
from typing import Callable, Dict, List, Optional
from reelkeeper.core.models import MediaKind, WatchState
from reelkeeper.infrastructure.db.repository import LogRepository, WatchStateRepository
from .library_service import LibraryStore

logger = logging.getLogger(__name__)


def reaches_completion(position: float, duration: Optional[float], fraction: float = 0.9) -> bool:
    """
    Helper for the playback side: has `position` passed `fraction` of `duration`?
    """
    if not duration or duration <= 0:
        return False
    return position >= duration * fraction


class WatchStateTracker:
    """
    Watch progress keyed by library item id only, so moving or renaming a
    file never touches it. Deleting library items never deletes it either;
    `clear` is the only way out.
    """

    def __init__(self, repo: WatchStateRepository, store: Optional[LibraryStore] = None,
                 log_repo: Optional[LogRepository] = None, clock: Callable[[], float] = time.time):
        self.repo = repo
        self.store = store
        self.log_repo = log_repo
        self._clock = clock
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, item_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = self._locks[item_id] = threading.Lock()
            return lock

    def record(self, item_id: int, position: float, completed: bool,
               duration: Optional[float] = None, timestamp: Optional[float] = None) -> WatchState:
        """
        Stores progress for an item. Writes older than the stored one are
        ignored; the state in effect afterwards is returned.
        """
        if position < 0:
            raise ValueError("position must not be negative")
        if duration is not None and duration < 0:
            raise ValueError("duration must not be negative")

        state = WatchState(
            item_id=item_id,
            position=position,
            duration=duration,
            completed=completed,
            last_watched=timestamp if timestamp is not None else self._clock(),
        )
        with self._lock_for(item_id):
            written = self.repo.upsert(state)
            current = self.repo.get(item_id)

        if written:
            logger.debug(f"Watch state for {item_id}: {position:.0f}s completed={completed}")
            if self.log_repo:
                self.log_repo.add("WATCH", str(item_id), f"position={position:.0f} completed={completed}")
        else:
            logger.debug(f"Ignoring stale watch state for {item_id} at {state.last_watched}")
        return current

    def query(self, item_id: int) -> Optional[WatchState]:
        return self.repo.get(item_id)

    def clear(self, item_id: int) -> bool:
        with self._lock_for(item_id):
            removed = self.repo.delete(item_id)
        if removed and self.log_repo:
            self.log_repo.add("WATCH", str(item_id), "cleared")
        return removed

    def _playables(self, item_id: int) -> List[int]:
        if self.store is None:
            return [item_id]
        item = self.store.get(item_id)
        if item.kind == MediaKind.MOVIE:
            return [item_id]
        return [ep.id for ep in self.store.episodes(item_id)]

    def progress(self, item_id: int) -> float:
        """
        Watched fraction in [0, 1]. Seasons and shows average their episodes,
        counting unwatched ones as 0.
        """
        ids = self._playables(item_id)
        if not ids:
            return 0.0
        states = self.repo.get_many(ids)
        return sum(states[i].fraction if i in states else 0.0 for i in ids) / len(ids)

    def last_watched(self, item_id: int) -> Optional[float]:
        states = self.repo.get_many(self._playables(item_id))
        return max((s.last_watched for s in states.values()), default=None)

    def mark(self, item_id: int, completed: bool, timestamp: Optional[float] = None) -> List[WatchState]:
        """
        Marks an item watched or unwatched. Seasons and shows cascade to every episode.
        """
        timestamp = timestamp if timestamp is not None else self._clock()
        results = []
        for playable_id in self._playables(item_id):
            existing = self.repo.get(playable_id)
            duration = existing.duration if existing else None
            if completed:
                position = duration if duration else (existing.position if existing else 0.0)
            else:
                position = 0.0
            results.append(self.record(playable_id, position, completed, duration, timestamp))
        return results

    def dangling(self) -> List[WatchState]:
        """
        States whose library item no longer exists. Kept until cleared.
        """
        if self.store is None:
            return []
        return [s for s in self.repo.get_all() if not self.store.exists(s.item_id)]
