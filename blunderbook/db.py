"""SQLite storage shared by the profile store, ledger and puzzle store.

Each call opens its own connection. Writes go through ``transaction()``,
which takes the database write lock up front (``BEGIN IMMEDIATE``) so
read-modify-write sequences on a user's rotation count cannot interleave.
Passing an existing connection joins the caller's transaction instead.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    display_name TEXT,
    lichess_username TEXT,
    lichess_connected_at TEXT,
    rotation_count INTEGER NOT NULL DEFAULT 0,
    settings TEXT NOT NULL DEFAULT '{}',
    total_games_analyzed INTEGER NOT NULL DEFAULT 0,
    total_solved INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_scan TEXT
);

CREATE TABLE IF NOT EXISTS puzzles (
    user_id TEXT NOT NULL,
    id TEXT NOT NULL,
    fen TEXT NOT NULL,
    correct_move TEXT NOT NULL,
    correct_san TEXT,
    player_move TEXT NOT NULL,
    played_san TEXT NOT NULL,
    opening_name TEXT NOT NULL,
    evaluation INTEGER NOT NULL,
    best_evaluation INTEGER NOT NULL,
    eval_loss INTEGER NOT NULL,
    game_id TEXT NOT NULL,
    game_url TEXT NOT NULL,
    player_color TEXT NOT NULL,
    ply INTEGER NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    is_favorite INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'new',
    review_state TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (user_id, id)
);

CREATE INDEX IF NOT EXISTS idx_puzzles_rotation
    ON puzzles (user_id, is_favorite, created_at);

CREATE TABLE IF NOT EXISTS processed_games (
    user_id TEXT NOT NULL,
    game_id TEXT NOT NULL,
    analyzed_at TEXT NOT NULL,
    puzzle_count INTEGER NOT NULL,
    PRIMARY KEY (user_id, game_id)
);

CREATE TABLE IF NOT EXISTS activity_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    puzzle_id TEXT NOT NULL,
    result TEXT NOT NULL,
    time_taken REAL,
    move_sequence TEXT NOT NULL DEFAULT '[]',
    timestamp TEXT NOT NULL
);
"""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class Database:
    """Handle on one SQLite database file."""

    def __init__(self, path: str | Path) -> None:
        """Open (and if needed create) the database.

        Args:
            path: Database file. Parent directories are created.
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    def connect(self) -> sqlite3.Connection:
        """Open a new autocommit connection with Row factory."""
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(
        self, conn: sqlite3.Connection | None = None
    ) -> Iterator[sqlite3.Connection]:
        """Run a block inside one write transaction.

        Args:
            conn: Connection already inside a transaction. When given, the
                block joins it and the owner decides commit or rollback.

        Yields:
            The connection to execute statements on.
        """
        if conn is not None:
            yield conn
            return

        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Yield a short-lived connection for read-only queries."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()
