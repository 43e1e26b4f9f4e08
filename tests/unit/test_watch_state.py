# Copyright (c) 2025 Trae AI. All rights reserved.

import pytest
from conftest import matched_episode, matched_movie, media_file, movie, show
from reelkeeper.core.models import MediaKind
from reelkeeper.core.reconcile import ReconcilePolicy
from reelkeeper.services.watch_state_service import reaches_completion


@pytest.fixture
def matrix_id(store):
    f = media_file("/lib/movies/Matrix.mkv", "fp-matrix")
    store.commit([f], {"fp-matrix": matched_movie(f.path, movie(603, "The Matrix", 1999))})
    return store.snapshot().links["fp-matrix"].item_id


@pytest.fixture
def show_ids(store):
    files, matches = [], {}
    for e in (1, 2, 3, 4):
        f = media_file(f"/lib/tv/Show A/Show.A.S01E0{e}.mkv", f"fp-{e}")
        files.append(f)
        matches[f.fingerprint] = matched_episode(f.path, show(42, "Show A", 2020), 1, e)
    store.commit(files, matches)
    episodes = [store.snapshot().links[f"fp-{e}"].item_id for e in (1, 2, 3, 4)]
    return store.items(MediaKind.SHOW)[0].id, episodes


def test_record_and_query(tracker, matrix_id):
    state = tracker.record(matrix_id, 1200, False, duration=8160, timestamp=100.0)

    assert state.position == 1200
    assert tracker.query(matrix_id) == state
    assert tracker.progress(matrix_id) == pytest.approx(1200 / 8160)


def test_stale_write_is_ignored(tracker, matrix_id):
    tracker.record(matrix_id, 500, False, timestamp=200.0)

    current = tracker.record(matrix_id, 100, False, timestamp=150.0)

    assert current.position == 500
    assert current.last_watched == 200.0


def test_equal_timestamp_overwrites(tracker, matrix_id):
    tracker.record(matrix_id, 500, False, timestamp=200.0)

    current = tracker.record(matrix_id, 600, True, timestamp=200.0)

    assert current.position == 600
    assert current.completed


def test_negative_position_is_rejected(tracker, matrix_id):
    with pytest.raises(ValueError):
        tracker.record(matrix_id, -1, False)


def test_clear(tracker, matrix_id):
    tracker.record(matrix_id, 10, False, timestamp=1.0)

    assert tracker.clear(matrix_id)
    assert tracker.query(matrix_id) is None
    assert not tracker.clear(matrix_id)


def test_show_progress_averages_episodes(tracker, show_ids):
    show_id, episodes = show_ids
    tracker.record(episodes[0], 0, True, timestamp=1.0)
    tracker.record(episodes[1], 30, False, duration=60, timestamp=2.0)

    assert tracker.progress(show_id) == pytest.approx((1.0 + 0.5) / 4)
    assert tracker.last_watched(show_id) == 2.0


def test_mark_show_watched_cascades(tracker, show_ids):
    show_id, episodes = show_ids

    states = tracker.mark(show_id, True, timestamp=10.0)

    assert len(states) == 4
    assert all(tracker.query(ep).completed for ep in episodes)
    assert tracker.progress(show_id) == pytest.approx(1.0)

    tracker.mark(show_id, False, timestamp=11.0)
    assert tracker.progress(show_id) == 0.0


def test_progress_survives_file_move(store, tracker, matrix_id):
    tracker.record(matrix_id, 300, False, timestamp=5.0)

    store.commit([media_file("/lib/archive/Matrix (1999).mkv", "fp-matrix")], {})

    assert store.snapshot().links["fp-matrix"].item_id == matrix_id
    assert tracker.query(matrix_id).position == 300


def test_state_outlives_deleted_item(store, tracker, matrix_id):
    tracker.record(matrix_id, 300, False, timestamp=5.0)
    policy = ReconcilePolicy(missing_debounce_cycles=1, orphan_grace_cycles=0)

    store.commit([], {}, policy=policy)

    assert not store.exists(matrix_id)
    assert [s.item_id for s in tracker.dangling()] == [matrix_id]
    assert tracker.query(matrix_id).position == 300


def test_reaches_completion():
    assert reaches_completion(90, 100)
    assert not reaches_completion(89, 100)
    assert reaches_completion(50, 100, fraction=0.5)
    assert not reaches_completion(10, None)
