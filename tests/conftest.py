# Copyright (c) 2025 Trae AI. All rights reserved.

import pytest
from pathlib import Path
from reelkeeper.core.config import Config
from reelkeeper.core.models import (
    FileMatch,
    MatchResult,
    MediaFile,
    MediaKind,
    ProviderCandidate,
    ScoredCandidate,
    TitleGuess,
)
from reelkeeper.core.provider import MetadataProvider
from reelkeeper.infrastructure.db.database import Database
from reelkeeper.infrastructure.db.repository import LogRepository, SnapshotRepository, WatchStateRepository
from reelkeeper.services.library_service import LibraryStore
from reelkeeper.services.watch_state_service import WatchStateTracker


class FakeProvider(MetadataProvider):
    """
    In-memory catalogue. `errors` are raised, in order, before answering.
    """

    def __init__(self, catalogue=None, errors=None, episodes=None):
        self.catalogue = catalogue or {}
        self.errors = list(errors or [])
        self.episodes = episodes or {}
        self.calls = []

    def search(self, title, year, kind):
        self.calls.append((title, year, kind))
        if self.errors:
            raise self.errors.pop(0)
        results = self.catalogue.get((title.lower(), kind), [])
        if year is not None:
            results = [c for c in results if c.year == year]
        return list(results)

    def episode_details(self, show_id, season, episode):
        title = self.episodes.get((show_id, season, episode))
        if title is None:
            return None
        return ProviderCandidate(provider_id=f"ep-{show_id}-{season}-{episode}", title=title,
                                 kind=MediaKind.EPISODE, parent_id=show_id)


def movie(provider_id, title, year=None):
    return ProviderCandidate(provider_id=str(provider_id), title=title, kind=MediaKind.MOVIE, year=year)


def show(provider_id, title, year=None):
    return ProviderCandidate(provider_id=str(provider_id), title=title, kind=MediaKind.SHOW, year=year)


def media_file(path, fingerprint, size=100):
    path = Path(path)
    return MediaFile(path=path, extension=path.suffix.lower(), size=size, mtime=0.0, fingerprint=fingerprint)


def matched_movie(path, candidate):
    guess = TitleGuess(raw_name=Path(path).name, cleaned_name=candidate.title, kind=MediaKind.MOVIE,
                       year=candidate.year)
    scored = ScoredCandidate(candidate=candidate, score=1.0)
    return FileMatch(guess=guess, result=MatchResult.matched(scored, [scored]))


def matched_episode(path, candidate, season, episode, episode_title=None):
    guess = TitleGuess(raw_name=Path(path).name, cleaned_name=candidate.title, kind=MediaKind.EPISODE,
                       season=season, episode=episode)
    scored = ScoredCandidate(candidate=candidate, score=1.0)
    result = MatchResult.matched(scored, [scored])
    result.episode_title = episode_title
    return FileMatch(guess=guess, result=result)


def ambiguous_movie(path, title, candidates):
    guess = TitleGuess(raw_name=Path(path).name, cleaned_name=title, kind=MediaKind.MOVIE)
    ranked = [ScoredCandidate(candidate=c, score=0.9) for c in candidates]
    return FileMatch(guess=guess, result=MatchResult.ambiguous(ranked, reason="Several candidates score alike"))


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture
def database(db_path):
    return Database(db_path)


@pytest.fixture
def snapshot_repo(database):
    return SnapshotRepository(database)


@pytest.fixture
def watch_repo(database):
    return WatchStateRepository(database)


@pytest.fixture
def log_repo(database):
    return LogRepository(database)


@pytest.fixture
def store(snapshot_repo, log_repo):
    return LibraryStore(snapshot_repo, log_repo)


@pytest.fixture
def tracker(watch_repo, store, log_repo):
    return WatchStateTracker(watch_repo, store, log_repo)


@pytest.fixture
def library_root(tmp_path):
    root = tmp_path / "library"
    root.mkdir()
    return root


@pytest.fixture
def make_config(tmp_path, library_root):
    def _make(**overrides):
        values = {
            "roots": [library_root],
            "database_path": tmp_path / "test.db",
            "tmdb_api_key": "fake_key",
            "backoff_base": 0.0,
        }
        values.update(overrides)
        return Config(**values)
    return _make
