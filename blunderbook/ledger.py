"""Processed-game ledger.

A row per (user, game) is the only deduplication signal: a game with a
row is never analyzed again for that user.
"""

from __future__ import annotations

import sqlite3
from typing import Iterable

from blunderbook.db import Database, utc_now
from blunderbook.models import ProcessedGameRecord


def _row_to_record(row: sqlite3.Row) -> ProcessedGameRecord:
    return ProcessedGameRecord(
        game_id=row["game_id"],
        user_id=row["user_id"],
        analyzed_at=row["analyzed_at"],
        puzzle_count=row["puzzle_count"],
    )


class ProcessedGameLedger:
    def __init__(self, db: Database) -> None:
        self._db = db

    def is_processed(self, user_id: str, game_id: str) -> bool:
        return self.get(user_id, game_id) is not None

    def processed_ids(self, user_id: str, game_ids: Iterable[str]) -> set[str]:
        """Return the subset of game_ids already in the ledger for this user."""
        ids = list(game_ids)
        if not ids:
            return set()
        placeholders = ",".join("?" for _ in ids)
        with self._db.reading() as conn:
            rows = conn.execute(
                f"SELECT game_id FROM processed_games "
                f"WHERE user_id = ? AND game_id IN ({placeholders})",
                [user_id, *ids],
            ).fetchall()
        return {row["game_id"] for row in rows}

    def mark_processed(
        self,
        user_id: str,
        game_id: str,
        puzzle_count: int,
        conn: sqlite3.Connection | None = None,
    ) -> ProcessedGameRecord:
        """Record that a game was analyzed.

        Args:
            conn: Join this open transaction instead of starting one.
        """
        record = ProcessedGameRecord(
            game_id=game_id,
            user_id=user_id,
            analyzed_at=utc_now(),
            puzzle_count=puzzle_count,
        )
        with self._db.transaction(conn) as tx:
            tx.execute(
                "INSERT OR REPLACE INTO processed_games "
                "(user_id, game_id, analyzed_at, puzzle_count) VALUES (?, ?, ?, ?)",
                (user_id, game_id, record.analyzed_at, puzzle_count),
            )
        return record

    def get(self, user_id: str, game_id: str) -> ProcessedGameRecord | None:
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT * FROM processed_games WHERE user_id = ? AND game_id = ?",
                (user_id, game_id),
            ).fetchone()
        return _row_to_record(row) if row else None

    def list_for_user(self, user_id: str) -> list[ProcessedGameRecord]:
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT * FROM processed_games WHERE user_id = ? "
                "ORDER BY analyzed_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_record(row) for row in rows]
