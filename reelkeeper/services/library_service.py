# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from reelkeeper.core.errors import UnknownItemError
from reelkeeper.core.models import (
    ChangeReport,
    Collection,
    FileLink,
    FileMatch,
    LibraryItem,
    LibrarySnapshot,
    MediaFile,
    MediaKind,
    PendingFile,
    PendingStatus,
    ProviderCandidate,
)
from reelkeeper.core.collection import (
    add_to_collection,
    create_collection,
    delete_collection,
    remove_from_collection,
    rename_collection,
)
from reelkeeper.core.reconcile import (
    ReconcilePolicy,
    check_integrity,
    reconcile,
    resolve_pending,
    set_hidden,
)
from reelkeeper.infrastructure.db.repository import LogRepository, SnapshotRepository

logger = logging.getLogger(__name__)


class LibraryStore:
    """
    Owns library items, file links, pending files and collections.

    Readers get the last committed snapshot. Commits are serialized: the
    new snapshot is computed on a copy, written in one transaction and only
    then swapped in.
    """

    def __init__(self, snapshot_repo: SnapshotRepository, log_repo: Optional[LogRepository] = None,
                 policy: Optional[ReconcilePolicy] = None):
        self.snapshot_repo = snapshot_repo
        self.log_repo = log_repo
        self.policy = policy or ReconcilePolicy()
        self._snapshot: Optional[LibrarySnapshot] = None
        self._commit_lock = threading.Lock()
        self._load_lock = threading.Lock()

    def load(self) -> LibrarySnapshot:
        """
        (Re)reads the persisted snapshot. Raises CorruptSnapshotError.
        """
        with self._load_lock:
            self._snapshot = self.snapshot_repo.load()
            return self._snapshot

    def snapshot(self) -> LibrarySnapshot:
        current = self._snapshot
        if current is None:
            current = self.load()
        return current

    def _swap(self, new: LibrarySnapshot):
        check_integrity(new)
        self.snapshot_repo.save(new)
        self._snapshot = new

    def _log(self, action_type: str, target: str, details: str = None):
        if self.log_repo:
            self.log_repo.add(action_type, target, details)

    def commit(self, files: Iterable[MediaFile], matches: Dict[str, FileMatch],
               unavailable_roots: Iterable[Path] = (), policy: Optional[ReconcilePolicy] = None,
               rematches: Optional[Dict[str, FileMatch]] = None) -> ChangeReport:
        with self._commit_lock:
            prior = self.snapshot()
            new, report = reconcile(prior, files, matches, unavailable_roots, policy or self.policy, rematches)
            self._swap(new)

        counts = report.counts()
        logger.info(
            f"Committed: {counts['matched']} linked, {len(report.moved)} moved, "
            f"{counts['ambiguous']} ambiguous, {counts['unmatched']} unmatched, "
            f"{counts['removed']} removed, {len(report.deleted)} deleted"
        )
        for fp, old, new_path in report.moved:
            logger.info(f"Moved: {old} -> {new_path}")
        for warning in report.warnings:
            logger.warning(warning)
        return report

    def resolve(self, fingerprint: str, candidate: ProviderCandidate, season: Optional[int] = None,
                episode: Optional[int] = None, episode_title: Optional[str] = None) -> LibraryItem:
        """
        Attaches a pending file to the chosen candidate.
        """
        with self._commit_lock:
            new, report = resolve_pending(self.snapshot(), fingerprint, candidate, season, episode, episode_title)
            self._swap(new)
        item = new.items[new.links[fingerprint].item_id]
        self._log("RESOLVE", str(new.links[fingerprint].path), f"-> {item.kind.value} {item.id} {candidate.title}")
        return item

    def _set_hidden(self, fingerprint: str, hidden: bool) -> PendingFile:
        with self._commit_lock:
            new, _ = set_hidden(self.snapshot(), fingerprint, hidden)
            self._swap(new)
        pending = new.pending[fingerprint]
        self._log("HIDE" if hidden else "UNHIDE", str(pending.path))
        return pending

    def hide(self, fingerprint: str) -> PendingFile:
        return self._set_hidden(fingerprint, True)

    def unhide(self, fingerprint: str) -> PendingFile:
        return self._set_hidden(fingerprint, False)

    # Collections

    def create_collection(self, name: Optional[str] = None) -> Collection:
        with self._commit_lock:
            new, collection = create_collection(self.snapshot(), name)
            self._swap(new)
        self._log("COLLECTION", collection.name, f"created {collection.id}")
        return collection

    def rename_collection(self, collection_id: int, name: Optional[str]) -> Collection:
        with self._commit_lock:
            new, collection = rename_collection(self.snapshot(), collection_id, name)
            self._swap(new)
        self._log("COLLECTION", collection.name, f"renamed {collection.id}")
        return collection

    def delete_collection(self, collection_id: int) -> Collection:
        with self._commit_lock:
            new, collection = delete_collection(self.snapshot(), collection_id)
            self._swap(new)
        self._log("COLLECTION", collection.name, f"deleted {collection.id}")
        return collection

    def add_to_collection(self, collection_id: int, item_id: int) -> Collection:
        with self._commit_lock:
            new, changed = add_to_collection(self.snapshot(), collection_id, item_id)
            if changed:
                self._swap(new)
        return new.collections[collection_id]

    def remove_from_collection(self, collection_id: int, item_id: int) -> Collection:
        with self._commit_lock:
            new, changed = remove_from_collection(self.snapshot(), collection_id, item_id)
            if changed:
                self._swap(new)
        return new.collections[collection_id]

    # Read side

    def exists(self, item_id: int) -> bool:
        return item_id in self.snapshot().items

    def get(self, item_id: int) -> LibraryItem:
        item = self.snapshot().items.get(item_id)
        if item is None:
            raise UnknownItemError(item_id)
        return item

    def items(self, kind: Optional[MediaKind] = None) -> List[LibraryItem]:
        items = self.snapshot().items.values()
        if kind is not None:
            items = [i for i in items if i.kind == kind]
        return sorted(items, key=lambda i: i.id)

    def children(self, item_id: int) -> List[LibraryItem]:
        snapshot = self.snapshot()
        if item_id not in snapshot.items:
            raise UnknownItemError(item_id)
        return snapshot.children(item_id)

    def episodes(self, item_id: int) -> List[LibraryItem]:
        """
        All episodes under a show or season, in viewing order.
        """
        item = self.get(item_id)
        if item.kind == MediaKind.EPISODE:
            return [item]
        if item.kind == MediaKind.SEASON:
            return self.children(item_id)
        if item.kind == MediaKind.SHOW:
            return [ep for season in self.children(item_id) for ep in self.children(season.id)]
        return []

    def files_for(self, item_id: int) -> List[FileLink]:
        return sorted(self.snapshot().links_for(item_id), key=lambda l: str(l.path))

    def duplicates(self) -> Dict[int, List[FileLink]]:
        by_item: Dict[int, List[FileLink]] = {}
        for link in self.snapshot().links.values():
            by_item.setdefault(link.item_id, []).append(link)
        return {item_id: sorted(links, key=lambda l: str(l.path))
                for item_id, links in by_item.items() if len(links) > 1}

    def pending(self, status: Optional[PendingStatus] = None) -> List[PendingFile]:
        entries = self.snapshot().pending.values()
        if status is not None:
            entries = [p for p in entries if p.status == status]
        return sorted(entries, key=lambda p: str(p.path))

    def find_pending(self, key: str) -> PendingFile:
        """
        Looks a pending file up by fingerprint, fingerprint prefix or path.
        """
        pending = self.snapshot().pending
        if key in pending:
            return pending[key]
        matches = [p for fp, p in pending.items() if fp.startswith(key) or str(p.path) == key]
        if len(matches) != 1:
            raise UnknownItemError(key)
        return matches[0]

    def full_title(self, item_id: int) -> str:
        item = self.get(item_id)
        if item.kind in (MediaKind.MOVIE, MediaKind.SHOW):
            return f"{item.title} ({item.year})" if item.year else item.title
        season = item if item.kind == MediaKind.SEASON else self.snapshot().items.get(item.parent_id)
        show = self.snapshot().items.get(season.parent_id) if season else None
        show_title = show.title if show else "Unknown"
        if item.kind == MediaKind.SEASON:
            return f"{show_title} - Season {item.season_number}"
        return f"{show_title} S{item.season_number or 0:02d}E{item.episode_number or 0:02d} - {item.title}"

    def _sibling_episode(self, item_id: int, step: int) -> Optional[LibraryItem]:
        item = self.get(item_id)
        if item.kind != MediaKind.EPISODE:
            return None
        season = self.snapshot().items.get(item.parent_id)
        if season is None:
            return None
        episodes = self.episodes(season.parent_id)
        index = next(i for i, ep in enumerate(episodes) if ep.id == item_id)
        target = index + step
        if 0 <= target < len(episodes):
            return episodes[target]
        return None

    def next_episode(self, item_id: int) -> Optional[LibraryItem]:
        return self._sibling_episode(item_id, 1)

    def previous_episode(self, item_id: int) -> Optional[LibraryItem]:
        return self._sibling_episode(item_id, -1)

    def collections(self) -> List[Collection]:
        return sorted(self.snapshot().collections.values(), key=lambda c: c.id)

    def collection(self, collection_id: int) -> Collection:
        collection = self.snapshot().collections.get(collection_id)
        if collection is None:
            raise UnknownItemError(f"collection {collection_id}")
        return collection

    def collection_items(self, collection_id: int) -> List[LibraryItem]:
        """
        Members in the order they were added.
        """
        snapshot = self.snapshot()
        return [snapshot.items[item_id] for item_id in self.collection(collection_id).item_ids]

    def collections_for(self, item_id: int) -> List[Collection]:
        return [c for c in self.collections() if item_id in c.item_ids]
