# Copyright (c) 2025 Trae AI. All rights reserved.

import pytest
from pathlib import Path
from reelkeeper.core.errors import CorruptSnapshotError
from reelkeeper.core.models import (
    Collection,
    FileLink,
    LibraryItem,
    LibrarySnapshot,
    MediaKind,
    PendingFile,
    PendingStatus,
    ProviderCandidate,
    ScoredCandidate,
    WatchState,
)
from reelkeeper.infrastructure.db.database import Database
from reelkeeper.infrastructure.db.repository import LogRepository, SnapshotRepository, WatchStateRepository


def sample_snapshot():
    show = LibraryItem(id=1, kind=MediaKind.SHOW, provider_id="42", title="Show A", year=2020, added_at=1.0)
    season = LibraryItem(id=2, kind=MediaKind.SEASON, provider_id="42:season:1", title="Season 1",
                         parent_id=1, season_number=1, added_at=1.0)
    episode = LibraryItem(id=3, kind=MediaKind.EPISODE, provider_id="42:s1e1", title="Pilot",
                          parent_id=2, season_number=1, episode_number=1, added_at=1.0, orphan_age=1)
    link = FileLink(fingerprint="fp-1", item_id=3, path=Path("/lib/Show A/S01E01.mkv"), size=10,
                    mtime=2.0, extension=".mkv", missing_cycles=1)
    candidate = ScoredCandidate(candidate=ProviderCandidate(provider_id="7", title="Other", kind=MediaKind.MOVIE,
                                                            year=1994), score=0.7)
    pending = PendingFile(fingerprint="fp-2", path=Path("/lib/Other.mkv"), status=PendingStatus.AMBIGUOUS,
                          title="Other", candidates=[candidate], reason="Best candidate below confidence threshold")
    return LibrarySnapshot(items={1: show, 2: season, 3: episode}, links={"fp-1": link},
                           pending={"fp-2": pending}, next_id=5,
                           collections={2: Collection(id=2, name="Rewatch", item_ids=[3, 1])},
                           next_collection_id=4)


def test_snapshot_round_trip(snapshot_repo):
    snapshot = sample_snapshot()

    snapshot_repo.save(snapshot)

    assert snapshot_repo.load() == snapshot


def test_empty_database_loads_empty_snapshot(snapshot_repo):
    snapshot = snapshot_repo.load()

    assert snapshot.items == {}
    assert snapshot.next_id == 1


def test_memory_database_shares_one_connection():
    repo = SnapshotRepository(Database(":memory:"))
    repo.save(sample_snapshot())

    assert repo.load().next_id == 5


def test_dangling_link_is_reported_as_corrupt(snapshot_repo, database):
    snapshot_repo.save(sample_snapshot())
    with database.get_connection() as conn:
        conn.execute("UPDATE file_links SET item_id = 99")
        conn.commit()

    with pytest.raises(CorruptSnapshotError):
        snapshot_repo.load()


def test_unknown_kind_is_reported_as_corrupt(snapshot_repo, database):
    snapshot_repo.save(sample_snapshot())
    with database.get_connection() as conn:
        conn.execute("UPDATE library_items SET kind = 'Album' WHERE id = 1")
        conn.commit()

    with pytest.raises(CorruptSnapshotError):
        snapshot_repo.load()


def test_watch_state_last_write_wins(watch_repo):
    assert watch_repo.upsert(WatchState(item_id=3, position=100, last_watched=10.0))
    assert not watch_repo.upsert(WatchState(item_id=3, position=50, last_watched=5.0))
    assert watch_repo.get(3).position == 100

    assert watch_repo.upsert(WatchState(item_id=3, position=200, completed=True, last_watched=10.0))
    state = watch_repo.get(3)
    assert state.position == 200
    assert state.completed is True


def test_watch_state_get_many_and_delete(watch_repo):
    watch_repo.upsert(WatchState(item_id=1, position=1, last_watched=1.0))
    watch_repo.upsert(WatchState(item_id=2, position=2, last_watched=2.0))

    assert set(watch_repo.get_many([1, 2, 3])) == {1, 2}
    assert [s.item_id for s in watch_repo.get_all()] == [2, 1]
    assert watch_repo.delete(1)
    assert not watch_repo.delete(1)
    assert watch_repo.get(1) is None


def test_log_repository(database):
    repo = LogRepository(database)
    repo.add("COMMIT", "cycle", "1 linked")
    repo.add("MATCH_FAIL", "/lib/x.mkv", "unmatched")

    logs = repo.get_recent(10)

    assert [log["action_type"] for log in logs] == ["MATCH_FAIL", "COMMIT"]
    assert logs[0]["target"] == "/lib/x.mkv"


def test_collection_member_of_unknown_collection_is_corrupt(snapshot_repo, database):
    snapshot_repo.save(sample_snapshot())
    with database.get_connection() as conn:
        conn.execute("INSERT INTO collection_items (collection_id, item_id, position) VALUES (9, 1, 0)")
        conn.commit()

    with pytest.raises(CorruptSnapshotError):
        snapshot_repo.load()
