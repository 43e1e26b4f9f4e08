# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple
from pydantic import BaseModel
from .errors import CorruptSnapshotError, MissingEpisodeError, ReelkeeperError, UnknownItemError
from .models import (
    ChangeReport,
    FileLink,
    FileMatch,
    LibraryItem,
    LibrarySnapshot,
    MatchResult,
    MatchStatus,
    MediaFile,
    MediaKind,
    PendingFile,
    PendingStatus,
    ProviderCandidate,
    ScoredCandidate,
    TitleGuess,
)

logger = logging.getLogger(__name__)


class ReconcilePolicy(BaseModel):
    missing_debounce_cycles: int = 2
    orphan_grace_cycles: int = 3

    @classmethod
    def from_config(cls, config) -> "ReconcilePolicy":
        return cls(
            missing_debounce_cycles=config.missing_debounce_cycles,
            orphan_grace_cycles=config.orphan_grace_cycles,
        )


def season_provider_id(show_id: str, season: int) -> str:
    return f"{show_id}:season:{season}"


def episode_provider_id(show_id: str, season: int, episode: int) -> str:
    return f"{show_id}:s{season}e{episode}"


def is_under(path: Path, roots: Iterable[Path]) -> bool:
    for root in roots:
        try:
            Path(path).relative_to(root)
            return True
        except ValueError:
            continue
    return False


def check_integrity(snapshot: LibrarySnapshot):
    """
    Raises CorruptSnapshotError when the snapshot breaks a structural rule.
    """
    max_id = max(snapshot.items, default=0)
    if snapshot.next_id <= max_id:
        raise CorruptSnapshotError(f"next_id {snapshot.next_id} does not exceed highest id {max_id}")

    expected_parent = {
        MediaKind.SEASON: MediaKind.SHOW,
        MediaKind.EPISODE: MediaKind.SEASON,
    }
    scopes = set()
    for item_id, item in snapshot.items.items():
        if item_id != item.id:
            raise CorruptSnapshotError(f"Item keyed {item_id} carries id {item.id}")
        parent_kind = expected_parent.get(item.kind)
        if parent_kind is None:
            if item.parent_id is not None:
                raise CorruptSnapshotError(f"{item.kind.value} {item.id} must not have a parent")
        else:
            parent = snapshot.items.get(item.parent_id)
            if parent is None or parent.kind != parent_kind:
                raise CorruptSnapshotError(f"{item.kind.value} {item.id} has invalid parent {item.parent_id}")
        if item.provider_id is not None:
            scope = (item.kind, item.provider_id, item.parent_id)
            if scope in scopes:
                raise CorruptSnapshotError(f"Duplicate provider id {item.provider_id} for {item.kind.value}")
            scopes.add(scope)

    for fp, link in snapshot.links.items():
        target = snapshot.items.get(link.item_id)
        if target is None or not target.is_playable:
            raise CorruptSnapshotError(f"Link {fp} points to invalid item {link.item_id}")
        if fp in snapshot.pending:
            raise CorruptSnapshotError(f"File {fp} is both linked and pending")

    for collection_id, collection in snapshot.collections.items():
        if collection_id != collection.id or collection.id >= snapshot.next_collection_id:
            raise CorruptSnapshotError(f"Collection keyed {collection_id} has invalid id {collection.id}")
        for item_id in collection.item_ids:
            if item_id not in snapshot.items:
                raise CorruptSnapshotError(f"Collection {collection.id} holds unknown item {item_id}")
        if len(set(collection.item_ids)) != len(collection.item_ids):
            raise CorruptSnapshotError(f"Collection {collection.id} holds an item twice")


class _Reconciler:
    """
    Works on a private deep copy of the prior snapshot.
    """

    def __init__(self, snapshot: LibrarySnapshot, now: Optional[float] = None):
        self.snapshot = snapshot.model_copy(deep=True)
        self.report = ChangeReport()
        self.now = now if now is not None else time.time()

    def _create(self, kind: MediaKind, title: str, provider_id: Optional[str], year: Optional[int] = None,
                parent_id: Optional[int] = None, season_number: Optional[int] = None,
                episode_number: Optional[int] = None) -> LibraryItem:
        item = LibraryItem(
            id=self.snapshot.next_id,
            kind=kind,
            provider_id=provider_id,
            title=title,
            year=year,
            parent_id=parent_id,
            season_number=season_number,
            episode_number=episode_number,
            added_at=self.now,
        )
        self.snapshot.next_id += 1
        self.snapshot.items[item.id] = item
        self.report.created.append(item.id)
        logger.debug(f"Created {kind.value} {item.id}: {title}")
        return item

    def resolve_target(self, guess: TitleGuess, result: MatchResult) -> LibraryItem:
        """
        Finds or creates the playable item a matched file belongs to.
        """
        candidate = result.candidate
        if guess.kind != MediaKind.EPISODE:
            item = self.snapshot.find(MediaKind.MOVIE, candidate.provider_id)
            return item or self._create(MediaKind.MOVIE, candidate.title, candidate.provider_id, candidate.year)

        if guess.episode is None:
            raise MissingEpisodeError()
        season_no = guess.season if guess.season is not None else 1

        show = self.snapshot.find(MediaKind.SHOW, candidate.provider_id)
        if show is None:
            show = self._create(MediaKind.SHOW, candidate.title, candidate.provider_id, candidate.year)

        season_pid = season_provider_id(candidate.provider_id, season_no)
        season = self.snapshot.find(MediaKind.SEASON, season_pid, show.id)
        if season is None:
            season = self._create(MediaKind.SEASON, f"Season {season_no}", season_pid,
                                  parent_id=show.id, season_number=season_no)

        episode_pid = episode_provider_id(candidate.provider_id, season_no, guess.episode)
        episode = self.snapshot.find(MediaKind.EPISODE, episode_pid, season.id)
        if episode is None:
            episode = self._create(MediaKind.EPISODE, result.episode_title or f"Episode {guess.episode}",
                                   episode_pid, parent_id=season.id,
                                   season_number=season_no, episode_number=guess.episode)
        elif result.episode_title and episode.title != result.episode_title:
            episode.title = result.episode_title
        return episode

    def link(self, media_file: MediaFile, item: LibraryItem):
        self.snapshot.links[media_file.fingerprint] = FileLink(
            fingerprint=media_file.fingerprint,
            item_id=item.id,
            path=media_file.path,
            size=media_file.size,
            mtime=media_file.mtime,
            extension=media_file.extension,
        )
        self.snapshot.pending.pop(media_file.fingerprint, None)
        self.report.linked.append(media_file.fingerprint)

    def set_pending(self, media_file: MediaFile, guess: TitleGuess, status: PendingStatus,
                    candidates: List[ScoredCandidate], reason: Optional[str]):
        fp = media_file.fingerprint
        previous = self.snapshot.pending.get(fp)
        pending = PendingFile(
            fingerprint=fp,
            path=media_file.path,
            size=media_file.size,
            mtime=media_file.mtime,
            extension=media_file.extension,
            status=status,
            kind=guess.kind,
            title=guess.cleaned_name,
            year=guess.year,
            season=guess.season,
            episode=guess.episode,
            candidates=candidates,
            reason=reason,
        )
        self.snapshot.pending[fp] = pending
        if previous is not None and previous.model_dump() == pending.model_dump():
            return
        if status == PendingStatus.AMBIGUOUS:
            self.report.ambiguous.append(fp)
        else:
            self.report.unmatched.append(fp)

    def apply_match(self, media_file: MediaFile, file_match: FileMatch):
        guess, result = file_match.guess, file_match.result
        if result.status == MatchStatus.MATCHED:
            try:
                item = self.resolve_target(guess, result)
            except ReelkeeperError as e:
                self.set_pending(media_file, guess, PendingStatus.UNMATCHED, result.candidates, str(e))
                return
            self.link(media_file, item)
            return
        status = PendingStatus.AMBIGUOUS if result.status == MatchStatus.AMBIGUOUS else PendingStatus.UNMATCHED
        self.set_pending(media_file, guess, status, result.candidates, result.reason)

    def apply_rematch(self, media_file: MediaFile, file_match: FileMatch):
        fp = media_file.fingerprint
        link = self.snapshot.links[fp]
        result = file_match.result
        if result.status != MatchStatus.MATCHED:
            self.report.warnings.append(
                f"Re-match of {media_file.path} was {result.status.value}; keeping existing link"
            )
            return
        try:
            target = self.resolve_target(file_match.guess, result)
        except ReelkeeperError as e:
            self.report.warnings.append(f"Re-match of {media_file.path} failed: {e}; keeping existing link")
            return
        if target.id != link.item_id:
            logger.info(f"Relinking {media_file.path}: item {link.item_id} -> {target.id}")
            link.item_id = target.id
            self.report.relinked.append(fp)

    def _delete_item(self, item: LibraryItem):
        del self.snapshot.items[item.id]
        self.report.deleted.append(item.id)
        for collection in self.snapshot.collections.values():
            if item.id in collection.item_ids:
                collection.item_ids.remove(item.id)
                logger.debug(f"Dropped deleted item {item.id} from collection '{collection.name}'")
        parent = self.snapshot.items.get(item.parent_id) if item.parent_id is not None else None
        if parent is not None and not self.snapshot.children(parent.id):
            self._delete_item(parent)

    def age_orphans(self, grace_cycles: int):
        linked_ids = {link.item_id for link in self.snapshot.links.values()}
        for item in sorted(self.snapshot.items.values(), key=lambda i: i.id):
            if not item.is_playable or item.id not in self.snapshot.items:
                continue
            if item.id in linked_ids:
                if item.orphan_age > 0:
                    item.orphan_age = 0
                    self.report.restored.append(item.id)
                continue
            item.orphan_age += 1
            if item.orphan_age == 1:
                self.report.orphaned.append(item.id)
            if item.orphan_age > grace_cycles:
                logger.info(f"Deleting {item.kind.value} {item.id} '{item.title}' after {grace_cycles} orphaned cycles")
                self._delete_item(item)


def _dedupe(files: Iterable[MediaFile], snapshot: LibrarySnapshot, report: ChangeReport) -> Dict[str, MediaFile]:
    """
    One file per fingerprint. A path the snapshot already knows wins,
    otherwise the lexically first path.
    """
    groups: Dict[str, List[MediaFile]] = {}
    for media_file in files:
        groups.setdefault(media_file.fingerprint, []).append(media_file)

    present = {}
    for fp, group in groups.items():
        group = sorted(group, key=lambda f: str(f.path))
        known = snapshot.links.get(fp) or snapshot.pending.get(fp)
        chosen = group[0]
        if known is not None:
            chosen = next((f for f in group if f.path == known.path), group[0])
        present[fp] = chosen
        for other in group:
            if other.path != chosen.path:
                report.warnings.append(f"Duplicate content: {other.path} is identical to {chosen.path}; ignoring it")
    return present


def reconcile(snapshot: LibrarySnapshot,
              files: Iterable[MediaFile],
              matches: Dict[str, FileMatch],
              unavailable_roots: Iterable[Path] = (),
              policy: Optional[ReconcilePolicy] = None,
              rematches: Optional[Dict[str, FileMatch]] = None,
              now: Optional[float] = None) -> Tuple[LibrarySnapshot, ChangeReport]:
    """
    Diffs the files found this cycle against the prior snapshot.
    Returns the next snapshot and what changed. The input is not modified.
    """
    policy = policy or ReconcilePolicy()
    rematches = rematches or {}
    unavailable_roots = [Path(r) for r in unavailable_roots]
    state = _Reconciler(snapshot, now)
    snap, report = state.snapshot, state.report

    present = _dedupe(files, snap, report)

    for fp in sorted(present, key=lambda k: str(present[k].path)):
        media_file = present[fp]
        link = snap.links.get(fp)
        if link is not None:
            if link.path != media_file.path:
                report.moved.append((fp, str(link.path), str(media_file.path)))
                link.path = media_file.path
            link.size, link.mtime, link.missing_cycles = media_file.size, media_file.mtime, 0
            if fp in rematches:
                state.apply_rematch(media_file, rematches[fp])
            continue

        pending = snap.pending.get(fp)
        if pending is not None:
            pending.path, pending.size, pending.mtime = media_file.path, media_file.size, media_file.mtime
            pending.missing_cycles = 0
            if pending.status == PendingStatus.HIDDEN:
                continue

        file_match = matches.get(fp)
        if file_match is not None:
            state.apply_match(media_file, file_match)
        elif pending is None:
            guess = TitleGuess(raw_name=media_file.path.name, cleaned_name=media_file.path.stem)
            state.set_pending(media_file, guess, PendingStatus.UNMATCHED, [], "Not matched yet")

    absent = [fp for fp in list(snap.links) + list(snap.pending) if fp not in present]
    for fp in absent:
        entry = snap.links.get(fp) or snap.pending.get(fp)
        if is_under(entry.path, unavailable_roots):
            continue
        entry.missing_cycles += 1
        if entry.missing_cycles >= policy.missing_debounce_cycles:
            if fp in snap.links:
                del snap.links[fp]
            else:
                del snap.pending[fp]
            report.removed.append(fp)
        else:
            report.missing.append(fp)

    state.age_orphans(policy.orphan_grace_cycles)
    return snap, report


def resolve_pending(snapshot: LibrarySnapshot, fingerprint: str, candidate: ProviderCandidate,
                    season: Optional[int] = None, episode: Optional[int] = None,
                    episode_title: Optional[str] = None,
                    now: Optional[float] = None) -> Tuple[LibrarySnapshot, ChangeReport]:
    """
    Manual resolution of a pending file onto a provider candidate.
    """
    pending = snapshot.pending.get(fingerprint)
    if pending is None:
        raise UnknownItemError(fingerprint)

    state = _Reconciler(snapshot, now)
    kind = MediaKind.EPISODE if candidate.kind != MediaKind.MOVIE else MediaKind.MOVIE
    guess = TitleGuess(
        raw_name=pending.path.name,
        cleaned_name=pending.title or candidate.title,
        kind=kind,
        year=pending.year,
        season=season if season is not None else pending.season,
        episode=episode if episode is not None else pending.episode,
    )
    scored = ScoredCandidate(candidate=candidate, score=1.0)
    result = MatchResult.matched(scored, [scored])
    result.episode_title = episode_title
    item = state.resolve_target(guess, result)
    media_file = MediaFile(
        path=pending.path,
        extension=pending.extension,
        size=pending.size,
        mtime=pending.mtime,
        fingerprint=fingerprint,
    )
    state.link(media_file, item)
    return state.snapshot, state.report


def set_hidden(snapshot: LibrarySnapshot, fingerprint: str, hidden: bool) -> Tuple[LibrarySnapshot, ChangeReport]:
    """
    Hidden files are kept as pending entries and skipped by matching.
    Hiding a linked file detaches it from its item.
    """
    snap = snapshot.model_copy(deep=True)
    report = ChangeReport()
    link = snap.links.get(fingerprint)
    pending = snap.pending.get(fingerprint)

    if link is not None:
        if not hidden:
            raise UnknownItemError(f"{fingerprint} (not hidden)")
        item = snap.items.get(link.item_id)
        del snap.links[fingerprint]
        snap.pending[fingerprint] = PendingFile(
            fingerprint=fingerprint,
            path=link.path,
            size=link.size,
            mtime=link.mtime,
            extension=link.extension,
            status=PendingStatus.HIDDEN,
            kind=MediaKind.EPISODE if item and item.kind == MediaKind.EPISODE else MediaKind.MOVIE,
            title=item.title if item else link.path.stem,
            year=item.year if item else None,
            season=item.season_number if item else None,
            episode=item.episode_number if item else None,
            reason="Hidden by user",
        )
        report.removed.append(fingerprint)
        return snap, report

    if pending is None:
        raise UnknownItemError(fingerprint)
    if hidden:
        pending.status = PendingStatus.HIDDEN
        pending.reason = "Hidden by user"
    elif pending.status == PendingStatus.HIDDEN:
        # Picked up again by the next cycle
        pending.status = PendingStatus.UNMATCHED
        pending.reason = "Unhidden by user"
    return snap, report
