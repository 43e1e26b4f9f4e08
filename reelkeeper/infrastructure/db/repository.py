# Copyright (c) 2025 Trae AI. All rights reserved.

import json
import sqlite3
from typing import Dict, List, Optional
from pydantic import ValidationError
from reelkeeper.core.errors import CorruptSnapshotError
from reelkeeper.core.models import (
    Collection,
    FileLink,
    LibraryItem,
    LibrarySnapshot,
    MediaKind,
    PendingFile,
    PendingStatus,
    ScoredCandidate,
    WatchState,
)
from reelkeeper.core.reconcile import check_integrity
from .database import Database


class SnapshotRepository:
    """
    Persists the library snapshot. A save replaces every snapshot table
    inside one transaction.
    """

    def __init__(self, db: Database):
        self.db = db

    def load(self) -> LibrarySnapshot:
        try:
            with self.db.get_connection() as conn:
                item_rows = conn.execute("SELECT * FROM library_items").fetchall()
                link_rows = conn.execute("SELECT * FROM file_links").fetchall()
                pending_rows = conn.execute("SELECT * FROM pending_files").fetchall()
                meta = conn.execute("SELECT value FROM library_meta WHERE key = 'next_id'").fetchone()
                collection_rows = conn.execute("SELECT * FROM collections").fetchall()
                member_rows = conn.execute(
                    "SELECT collection_id, item_id FROM collection_items ORDER BY collection_id, position"
                ).fetchall()
                collection_meta = conn.execute(
                    "SELECT value FROM library_meta WHERE key = 'next_collection_id'"
                ).fetchone()
        except sqlite3.DatabaseError as e:
            raise CorruptSnapshotError(f"Cannot read library database: {e}") from e

        try:
            items = {}
            for row in item_rows:
                data = dict(row)
                data["kind"] = MediaKind(data["kind"])
                items[data["id"]] = LibraryItem(**data)

            links = {}
            for row in link_rows:
                links[row["fingerprint"]] = FileLink(**dict(row))

            pending = {}
            for row in pending_rows:
                data = dict(row)
                data["status"] = PendingStatus(data["status"])
                data["kind"] = MediaKind(data["kind"])
                data["candidates"] = [
                    ScoredCandidate.model_validate(c) for c in json.loads(data["candidates"] or "[]")
                ]
                pending[data["fingerprint"]] = PendingFile(**data)

            if meta is None:
                if items:
                    raise CorruptSnapshotError("Library has items but no id counter")
                next_id = 1
            else:
                next_id = int(meta["value"])

            collections = {row["id"]: Collection(**dict(row)) for row in collection_rows}
            for row in member_rows:
                collection = collections.get(row["collection_id"])
                if collection is None:
                    raise CorruptSnapshotError(f"Member of unknown collection {row['collection_id']}")
                collection.item_ids.append(row["item_id"])
            next_collection_id = int(collection_meta["value"]) if collection_meta else max(collections, default=0) + 1
        except (ValidationError, ValueError, TypeError, KeyError) as e:
            raise CorruptSnapshotError(f"Invalid library data: {e}") from e

        snapshot = LibrarySnapshot(
            items=items,
            links=links,
            pending=pending,
            next_id=next_id,
            collections=collections,
            next_collection_id=next_collection_id,
        )
        check_integrity(snapshot)
        return snapshot

    def save(self, snapshot: LibrarySnapshot):
        conn = self.db.get_connection()
        with conn:
            conn.execute("DELETE FROM file_links")
            conn.execute("DELETE FROM pending_files")
            conn.execute("DELETE FROM library_items")
            conn.executemany(
                """
                INSERT INTO library_items
                (id, kind, provider_id, title, year, parent_id, season_number, episode_number, added_at, orphan_age)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        item.id,
                        item.kind.value,
                        item.provider_id,
                        item.title,
                        item.year,
                        item.parent_id,
                        item.season_number,
                        item.episode_number,
                        item.added_at,
                        item.orphan_age,
                    )
                    for item in snapshot.items.values()
                ],
            )
            conn.executemany(
                """
                INSERT INTO file_links (fingerprint, item_id, path, size, mtime, extension, missing_cycles)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (link.fingerprint, link.item_id, str(link.path), link.size, link.mtime,
                     link.extension, link.missing_cycles)
                    for link in snapshot.links.values()
                ],
            )
            conn.executemany(
                """
                INSERT INTO pending_files
                (fingerprint, path, size, mtime, extension, status, kind, title, year, season, episode,
                 candidates, reason, missing_cycles)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        p.fingerprint,
                        str(p.path),
                        p.size,
                        p.mtime,
                        p.extension,
                        p.status.value,
                        p.kind.value,
                        p.title,
                        p.year,
                        p.season,
                        p.episode,
                        json.dumps([c.model_dump(mode="json") for c in p.candidates]),
                        p.reason,
                        p.missing_cycles,
                    )
                    for p in snapshot.pending.values()
                ],
            )
            conn.execute(
                "INSERT OR REPLACE INTO library_meta (key, value) VALUES ('next_id', ?)",
                (str(snapshot.next_id),),
            )
            conn.execute("DELETE FROM collection_items")
            conn.execute("DELETE FROM collections")
            conn.executemany(
                "INSERT INTO collections (id, name) VALUES (?, ?)",
                [(c.id, c.name) for c in snapshot.collections.values()],
            )
            conn.executemany(
                "INSERT INTO collection_items (collection_id, item_id, position) VALUES (?, ?, ?)",
                [
                    (c.id, item_id, position)
                    for c in snapshot.collections.values()
                    for position, item_id in enumerate(c.item_ids)
                ],
            )
            conn.execute(
                "INSERT OR REPLACE INTO library_meta (key, value) VALUES ('next_collection_id', ?)",
                (str(snapshot.next_collection_id),),
            )


class WatchStateRepository:
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _to_state(row) -> WatchState:
        data = dict(row)
        data["completed"] = bool(data["completed"])
        return WatchState(**data)

    def get(self, item_id: int) -> Optional[WatchState]:
        with self.db.get_connection() as conn:
            row = conn.execute("SELECT * FROM watch_state WHERE item_id = ?", (item_id,)).fetchone()
            return self._to_state(row) if row else None

    def get_many(self, item_ids: List[int]) -> Dict[int, WatchState]:
        if not item_ids:
            return {}
        placeholders = ",".join("?" for _ in item_ids)
        with self.db.get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM watch_state WHERE item_id IN ({placeholders})", tuple(item_ids)
            ).fetchall()
            return {row["item_id"]: self._to_state(row) for row in rows}

    def get_all(self) -> List[WatchState]:
        with self.db.get_connection() as conn:
            rows = conn.execute("SELECT * FROM watch_state ORDER BY last_watched DESC").fetchall()
            return [self._to_state(row) for row in rows]

    def upsert(self, state: WatchState) -> bool:
        """
        Last write wins: a write older than the stored one is ignored.
        Returns True when the row was written.
        """
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO watch_state (item_id, position, duration, completed, last_watched)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET
                    position = excluded.position,
                    duration = excluded.duration,
                    completed = excluded.completed,
                    last_watched = excluded.last_watched
                WHERE excluded.last_watched >= watch_state.last_watched
                """,
                (state.item_id, state.position, state.duration, int(state.completed), state.last_watched),
            )
            conn.commit()
            return cursor.rowcount > 0

    def delete(self, item_id: int) -> bool:
        with self.db.get_connection() as conn:
            cursor = conn.execute("DELETE FROM watch_state WHERE item_id = ?", (item_id,))
            conn.commit()
            return cursor.rowcount > 0


class LogRepository:
    def __init__(self, db: Database):
        self.db = db

    def add(self, action_type: str, target: str, details: str = None):
        with self.db.get_connection() as conn:
            conn.execute(
                "INSERT INTO operation_logs (action_type, target, details) VALUES (?, ?, ?)",
                (action_type, str(target), details)
            )
            conn.commit()

    def get_recent(self, limit: int = 100) -> List[Dict]:
        with self.db.get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM operation_logs ORDER BY id DESC LIMIT ?",
                (limit,)
            )
            return [dict(row) for row in cursor.fetchall()]
