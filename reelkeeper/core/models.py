# Copyright (c) 2025 Trae AI. All rights reserved.

import time
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field


class MediaKind(Enum):
    MOVIE = "Movie"
    SHOW = "Show"
    SEASON = "Season"
    EPISODE = "Episode"


class MatchStatus(Enum):
    MATCHED = "matched"
    AMBIGUOUS = "ambiguous"
    UNMATCHED = "unmatched"


class PendingStatus(Enum):
    AMBIGUOUS = "ambiguous"
    UNMATCHED = "unmatched"
    HIDDEN = "hidden"


class CycleState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    MATCHING = "matching"
    COMMITTING = "committing"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MediaFile(BaseModel):
    """
    Represents a single video file on disk.
    Identity is the content fingerprint, never the path.
    """

    path: Path
    extension: str
    size: int = 0
    mtime: float = 0.0
    fingerprint: str = ""


class TitleGuess(BaseModel):
    """
    Structured guess derived from a path. Never persisted.
    """

    model_config = ConfigDict(frozen=True)

    raw_name: str
    cleaned_name: str
    kind: MediaKind = MediaKind.MOVIE
    year: Optional[int] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    noise_tokens: Tuple[str, ...] = ()


class ProviderCandidate(BaseModel):
    """
    One entry of a metadata provider search response.
    """

    provider_id: str
    title: str
    kind: MediaKind
    year: Optional[int] = None
    parent_id: Optional[str] = None
    original_title: Optional[str] = None


class ScoredCandidate(BaseModel):
    candidate: ProviderCandidate
    score: float


class MatchResult(BaseModel):
    status: MatchStatus
    candidate: Optional[ProviderCandidate] = None
    confidence: float = 0.0
    candidates: List[ScoredCandidate] = Field(default_factory=list)
    reason: Optional[str] = None
    provider_error: bool = False
    episode_title: Optional[str] = None

    @classmethod
    def matched(cls, scored: ScoredCandidate, ranked: List[ScoredCandidate]) -> "MatchResult":
        return cls(
            status=MatchStatus.MATCHED,
            candidate=scored.candidate,
            confidence=scored.score,
            candidates=ranked,
        )

    @classmethod
    def ambiguous(cls, ranked: List[ScoredCandidate], reason: Optional[str] = None) -> "MatchResult":
        return cls(
            status=MatchStatus.AMBIGUOUS,
            confidence=ranked[0].score if ranked else 0.0,
            candidates=ranked,
            reason=reason,
        )

    @classmethod
    def unmatched(cls, reason: Optional[str] = None, provider_error: bool = False,
                  ranked: Optional[List[ScoredCandidate]] = None) -> "MatchResult":
        return cls(
            status=MatchStatus.UNMATCHED,
            confidence=ranked[0].score if ranked else 0.0,
            candidates=ranked or [],
            reason=reason,
            provider_error=provider_error,
        )


class FileMatch(BaseModel):
    """
    Parser and Matcher output for one scanned file, handed to the store.
    """

    guess: TitleGuess
    result: MatchResult


class LibraryItem(BaseModel):
    """
    Tagged variant over {Movie, Show, Season, Episode} sharing one header.
    """

    id: int
    kind: MediaKind
    provider_id: Optional[str] = None
    title: str
    year: Optional[int] = None
    parent_id: Optional[int] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    added_at: float = Field(default_factory=time.time)
    orphan_age: int = 0

    @property
    def is_playable(self) -> bool:
        return self.kind in (MediaKind.MOVIE, MediaKind.EPISODE)

    @property
    def orphaned(self) -> bool:
        return self.orphan_age > 0


class FileLink(BaseModel):
    fingerprint: str
    item_id: int
    path: Path
    size: int = 0
    mtime: float = 0.0
    extension: str = ""
    missing_cycles: int = 0


class PendingFile(BaseModel):
    """
    Placeholder for a file that is not attached to any library item yet.
    """

    fingerprint: str
    path: Path
    size: int = 0
    mtime: float = 0.0
    extension: str = ""
    status: PendingStatus = PendingStatus.UNMATCHED
    kind: MediaKind = MediaKind.MOVIE
    title: str = ""
    year: Optional[int] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    candidates: List[ScoredCandidate] = Field(default_factory=list)
    reason: Optional[str] = None
    missing_cycles: int = 0


class Collection(BaseModel):
    """
    User-curated group of library items. Deleting an item drops it from
    every collection.
    """

    id: int
    name: str = "Untitled Collection"
    item_ids: List[int] = Field(default_factory=list)


class WatchState(BaseModel):
    item_id: int
    position: float = 0.0
    duration: Optional[float] = None
    completed: bool = False
    last_watched: float = 0.0

    @property
    def fraction(self) -> float:
        if self.completed:
            return 1.0
        if not self.duration:
            return 0.0
        return max(0.0, min(1.0, self.position / self.duration))


class LibrarySnapshot(BaseModel):
    """
    Items, file links, pending files and collections as of the last committed
    reconciliation.
    """

    items: Dict[int, LibraryItem] = Field(default_factory=dict)
    links: Dict[str, FileLink] = Field(default_factory=dict)
    pending: Dict[str, PendingFile] = Field(default_factory=dict)
    next_id: int = 1
    collections: Dict[int, Collection] = Field(default_factory=dict)
    next_collection_id: int = 1

    def fingerprints(self) -> set:
        return set(self.links) | set(self.pending)

    def links_for(self, item_id: int) -> List[FileLink]:
        return [link for link in self.links.values() if link.item_id == item_id]

    def children(self, item_id: int) -> List[LibraryItem]:
        kids = [item for item in self.items.values() if item.parent_id == item_id]
        return sorted(kids, key=lambda i: (i.season_number or 0, i.episode_number or 0, i.id))

    def find(self, kind: MediaKind, provider_id: Optional[str],
             parent_id: Optional[int] = None) -> Optional[LibraryItem]:
        if provider_id is None:
            return None
        for item in self.items.values():
            if item.kind == kind and item.provider_id == provider_id and item.parent_id == parent_id:
                return item
        return None


class ChangeReport(BaseModel):
    created: List[int] = Field(default_factory=list)
    linked: List[str] = Field(default_factory=list)
    moved: List[Tuple[str, str, str]] = Field(default_factory=list)
    relinked: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    orphaned: List[int] = Field(default_factory=list)
    restored: List[int] = Field(default_factory=list)
    deleted: List[int] = Field(default_factory=list)
    ambiguous: List[str] = Field(default_factory=list)
    unmatched: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "matched": len(self.linked) + len(self.relinked),
            "ambiguous": len(self.ambiguous),
            "unmatched": len(self.unmatched),
            "removed": len(self.removed),
            "orphaned": len(self.orphaned),
        }

    def is_empty(self) -> bool:
        return not any((
            self.created, self.linked, self.moved, self.relinked, self.missing,
            self.removed, self.orphaned, self.restored, self.deleted,
            self.ambiguous, self.unmatched,
        ))


class ScanReport(BaseModel):
    warnings: List[str] = Field(default_factory=list)
    unavailable_roots: List[Path] = Field(default_factory=list)
    files_seen: int = 0


class CycleResult(BaseModel):
    state: CycleState
    counts: Dict[str, int] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)
    report: Optional[ChangeReport] = None
    pending_ambiguous: int = 0
    pending_unmatched: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0
    coalesced: bool = False
    error: Optional[str] = None
