# Copyright (c) 2025 Trae AI. All rights reserved.

import sqlite3
import pytest
from conftest import ambiguous_movie, matched_episode, matched_movie, media_file, movie, show
from reelkeeper.core.errors import UnknownItemError
from reelkeeper.core.models import MediaKind, PendingStatus
from reelkeeper.core.reconcile import ReconcilePolicy
from reelkeeper.services.library_service import LibraryStore

MATRIX = movie(603, "The Matrix", 1999)
SHOW_A = show(42, "Show A", 2020)


def commit_show(store):
    files, matches = [], {}
    for season, episode in [(1, 1), (1, 2), (2, 1)]:
        f = media_file(f"/lib/tv/Show A/Show.A.S{season:02d}E{episode:02d}.mkv", f"fp-{season}-{episode}")
        files.append(f)
        matches[f.fingerprint] = matched_episode(f.path, SHOW_A, season, episode, f"Episode {season}.{episode}")
    store.commit(files, matches)
    return {(s, e): store.snapshot().links[f"fp-{s}-{e}"].item_id for s, e in [(1, 1), (1, 2), (2, 1)]}


def test_commit_is_persisted(store, snapshot_repo):
    f = media_file("/lib/movies/Matrix.mkv", "fp-matrix")
    report = store.commit([f], {"fp-matrix": matched_movie(f.path, MATRIX)})

    assert report.counts()["matched"] == 1
    reloaded = LibraryStore(snapshot_repo).load()
    assert reloaded == store.snapshot()


def test_failed_save_keeps_previous_snapshot(store, snapshot_repo, monkeypatch):
    f = media_file("/lib/movies/Matrix.mkv", "fp-matrix")
    store.commit([f], {"fp-matrix": matched_movie(f.path, MATRIX)})
    before = store.snapshot()

    def broken_save(snapshot):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(snapshot_repo, "save", broken_save)
    other = media_file("/lib/movies/Other.mkv", "fp-other")
    with pytest.raises(sqlite3.OperationalError):
        store.commit([f, other], {})

    assert store.snapshot() is before
    monkeypatch.undo()
    assert LibraryStore(snapshot_repo).load() == before


def test_full_titles(store):
    ids = commit_show(store)
    f = media_file("/lib/movies/Matrix.mkv", "fp-matrix")
    store.commit([f] + [media_file(link.path, fp) for fp, link in store.snapshot().links.items()],
                 {"fp-matrix": matched_movie(f.path, MATRIX)})
    movie_id = store.snapshot().links["fp-matrix"].item_id
    episode = store.get(ids[(1, 2)])
    season = store.get(episode.parent_id)

    assert store.full_title(movie_id) == "The Matrix (1999)"
    assert store.full_title(season.parent_id) == "Show A (2020)"
    assert store.full_title(season.id) == "Show A - Season 1"
    assert store.full_title(episode.id) == "Show A S01E02 - Episode 1.2"


def test_episode_navigation_crosses_seasons(store):
    ids = commit_show(store)

    assert store.next_episode(ids[(1, 2)]).id == ids[(2, 1)]
    assert store.previous_episode(ids[(2, 1)]).id == ids[(1, 2)]
    assert store.previous_episode(ids[(1, 1)]) is None
    assert store.next_episode(ids[(2, 1)]) is None


def test_children_and_episodes(store):
    ids = commit_show(store)
    show_item = store.items(MediaKind.SHOW)[0]

    seasons = store.children(show_item.id)
    assert [s.season_number for s in seasons] == [1, 2]
    assert [e.id for e in store.episodes(show_item.id)] == [ids[(1, 1)], ids[(1, 2)], ids[(2, 1)]]
    with pytest.raises(UnknownItemError):
        store.get(9999)


def test_duplicates_lists_items_with_several_files(store):
    a = media_file("/lib/movies/Matrix.720p.mkv", "fp-720")
    b = media_file("/lib/movies/Matrix.1080p.mkv", "fp-1080")
    store.commit([a, b], {"fp-720": matched_movie(a.path, MATRIX), "fp-1080": matched_movie(b.path, MATRIX)})

    duplicates = store.duplicates()

    assert len(duplicates) == 1
    (links,) = duplicates.values()
    assert [link.fingerprint for link in links] == ["fp-1080", "fp-720"]


def test_resolve_hide_and_find_pending(store, log_repo):
    a = media_file("/lib/movies/Show A.mkv", "abc123")
    b = media_file("/lib/movies/Sample.mkv", "abd456")
    store.commit([a, b], {"abc123": ambiguous_movie(a.path, "Show A", [movie(1, "Show A", 1994),
                                                                       movie(2, "Show A", 2020)])})

    assert store.find_pending("abc").fingerprint == "abc123"
    assert store.find_pending("/lib/movies/Sample.mkv").fingerprint == "abd456"
    with pytest.raises(UnknownItemError):
        store.find_pending("ab")

    hidden = store.hide("abd456")
    assert hidden.status == PendingStatus.HIDDEN
    assert [p.fingerprint for p in store.pending(PendingStatus.HIDDEN)] == ["abd456"]
    assert store.unhide("abd456").status == PendingStatus.UNMATCHED

    item = store.resolve("abc123", movie(2, "Show A", 2020))
    assert item.provider_id == "2"
    assert store.pending(PendingStatus.AMBIGUOUS) == []
    assert log_repo.get_recent(1)[0]["action_type"] == "RESOLVE"


def test_collections_are_persisted(store, snapshot_repo, log_repo):
    ids = commit_show(store)
    collection = store.create_collection("Rewatch")
    store.add_to_collection(collection.id, ids[(1, 2)])
    store.add_to_collection(collection.id, ids[(1, 1)])
    store.add_to_collection(collection.id, ids[(1, 2)])

    reloaded = LibraryStore(snapshot_repo)
    assert [c.name for c in reloaded.collections()] == ["Rewatch"]
    assert [i.id for i in reloaded.collection_items(collection.id)] == [ids[(1, 2)], ids[(1, 1)]]
    assert [c.id for c in reloaded.collections_for(ids[(1, 1)])] == [collection.id]
    assert log_repo.get_recent(1)[0]["action_type"] == "COLLECTION"

    store.remove_from_collection(collection.id, ids[(1, 2)])
    assert store.collection(collection.id).item_ids == [ids[(1, 1)]]
    with pytest.raises(UnknownItemError):
        store.add_to_collection(collection.id, 999)

    store.delete_collection(collection.id)
    with pytest.raises(UnknownItemError):
        store.collection(collection.id)


def test_deleted_items_are_purged_from_collections(store, snapshot_repo):
    policy = ReconcilePolicy(missing_debounce_cycles=1, orphan_grace_cycles=1)
    f = media_file("/lib/movies/Matrix.mkv", "fp-matrix")
    store.commit([f], {"fp-matrix": matched_movie(f.path, MATRIX)}, policy=policy)
    matrix_id = store.snapshot().links["fp-matrix"].item_id
    collection = store.create_collection("Sci-Fi")
    store.add_to_collection(collection.id, matrix_id)

    for _ in range(3):
        store.commit([], {}, policy=policy)

    assert not store.exists(matrix_id)
    assert store.collection(collection.id).item_ids == []
    assert LibraryStore(snapshot_repo).collection(collection.id).item_ids == []
