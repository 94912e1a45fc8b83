"""User profile store: linked Lichess handle, settings and scan stats."""

from __future__ import annotations

import json
import logging
import sqlite3

from blunderbook.db import Database, utc_now
from blunderbook.errors import ProfileNotFound

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "theme": "dark",
    "minElo": 1000,
    "autoAnalyze": False,
    "notificationsEnabled": True,
}


def _row_to_profile(row: sqlite3.Row) -> dict:
    profile = dict(row)
    profile["settings"] = json.loads(profile["settings"] or "{}")
    return profile


class UserProfileStore:
    """Profiles keyed by user id, one row per user."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create_profile(self, user_id: str, display_name: str | None = None) -> dict:
        """Create a profile with default settings if none exists.

        Returns:
            The stored profile (existing or new).
        """
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users (user_id, display_name, settings, created_at) "
                "VALUES (?, ?, ?, ?)",
                (user_id, display_name, json.dumps(DEFAULT_SETTINGS), utc_now()),
            )
        return self.get_profile(user_id)

    def get_profile(self, user_id: str) -> dict:
        """Return the profile for a user.

        Raises:
            ProfileNotFound: If the user has no profile.
        """
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            raise ProfileNotFound(f"User profile not found: {user_id}")
        return _row_to_profile(row)

    def link_lichess_account(self, user_id: str, handle: str) -> dict:
        """Store the user's Lichess handle.

        Raises:
            ValueError: If the handle is empty after trimming.
            ProfileNotFound: If the user has no profile.
        """
        handle = (handle or "").strip()
        if not handle:
            raise ValueError("Lichess username cannot be empty")
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE users SET lichess_username = ?, lichess_connected_at = ? "
                "WHERE user_id = ?",
                (handle, utc_now(), user_id),
            )
            if cur.rowcount == 0:
                raise ProfileNotFound(f"User profile not found: {user_id}")
        logger.info("Linked %s to Lichess account %s", user_id, handle)
        return self.get_profile(user_id)

    def get_linked_handle(self, user_id: str) -> str | None:
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT lichess_username FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return row["lichess_username"] or None

    def has_linked_account(self, user_id: str) -> bool:
        return self.get_linked_handle(user_id) is not None

    def update_settings(self, user_id: str, changes: dict) -> dict:
        """Merge changes into the user's settings and return the result."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT settings FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row is None:
                raise ProfileNotFound(f"User profile not found: {user_id}")
            settings = {**json.loads(row["settings"] or "{}"), **changes}
            conn.execute(
                "UPDATE users SET settings = ? WHERE user_id = ?",
                (json.dumps(settings), user_id),
            )
        return settings

    def record_scan(
        self,
        user_id: str,
        games_analyzed: int,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Stamp the last scan time and add to the analyzed-games total."""
        with self._db.transaction(conn) as tx:
            tx.execute(
                "UPDATE users SET last_scan = ?, "
                "total_games_analyzed = total_games_analyzed + ? WHERE user_id = ?",
                (utc_now(), games_analyzed, user_id),
            )
