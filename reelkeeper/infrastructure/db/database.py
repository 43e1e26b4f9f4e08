# Copyright (c) 2025 Trae AI. All rights reserved.

import sqlite3
from pathlib import Path

SCHEMA_VERSION = 1


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        # Allow using :memory: for testing, which is not a path
        if str(self.db_path) != ":memory:":
            self.db_path = Path(self.db_path)
            if not self.db_path.parent.exists():
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self.get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS library_items (
                    id INTEGER PRIMARY KEY,
                    kind TEXT NOT NULL,
                    provider_id TEXT,
                    title TEXT NOT NULL,
                    year INTEGER,
                    parent_id INTEGER,
                    season_number INTEGER,
                    episode_number INTEGER,
                    added_at REAL,
                    orphan_age INTEGER DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS file_links (
                    fingerprint TEXT PRIMARY KEY,
                    item_id INTEGER NOT NULL,
                    path TEXT NOT NULL,
                    size INTEGER,
                    mtime REAL,
                    extension TEXT,
                    missing_cycles INTEGER DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_files (
                    fingerprint TEXT PRIMARY KEY,
                    path TEXT NOT NULL,
                    size INTEGER,
                    mtime REAL,
                    extension TEXT,
                    status TEXT NOT NULL,
                    kind TEXT,
                    title TEXT,
                    year INTEGER,
                    season INTEGER,
                    episode INTEGER,
                    candidates TEXT,
                    reason TEXT,
                    missing_cycles INTEGER DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS library_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS collections (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS collection_items (
                    collection_id INTEGER NOT NULL,
                    item_id INTEGER NOT NULL,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (collection_id, item_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS watch_state (
                    item_id INTEGER PRIMARY KEY,
                    position REAL DEFAULT 0,
                    duration REAL,
                    completed INTEGER DEFAULT 0,
                    last_watched REAL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS operation_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    action_type TEXT,
                    target TEXT,
                    details TEXT
                )
                """
            )
            conn.execute(
                "INSERT OR IGNORE INTO library_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            conn.commit()

    def get_connection(self):
        # Each :memory: connection is a fresh empty database, so share one
        if str(self.db_path) == ":memory:":
            if not hasattr(self, '_memory_conn'):
                self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False)
                self._memory_conn.row_factory = sqlite3.Row
            return self._memory_conn

        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn
