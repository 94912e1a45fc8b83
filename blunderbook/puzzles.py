"""Rotating puzzle store.

Each user keeps at most ``cap`` (default 60) non-favorite puzzles. Saving
a batch evicts the oldest non-favorites first, then inserts. Favorites
never count toward the cap and are never evicted.

The rotation count lives on the user's profile row and is only changed
inside the same transaction as the puzzle rows it describes.

CLI interface outputs JSON to stdout.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sqlite3
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

from blunderbook.config import load_settings
from blunderbook.db import Database, utc_now
from blunderbook.errors import ProfileNotFound, PuzzleNotFound
from blunderbook.models import Puzzle, ReviewState

logger = logging.getLogger(__name__)

ROTATION_CAP = 60
STATUSES = ("new", "active", "solved", "mastered")

# Successful attempts needed before a puzzle counts as mastered
_MASTERED_AFTER = 3


def _row_to_puzzle(row: sqlite3.Row) -> Puzzle:
    review = json.loads(row["review_state"] or "{}")
    return Puzzle(
        id=row["id"],
        fen=row["fen"],
        correct_move=row["correct_move"],
        correct_san=row["correct_san"],
        player_move=row["player_move"],
        played_san=row["played_san"],
        opening_name=row["opening_name"],
        evaluation=row["evaluation"],
        best_evaluation=row["best_evaluation"],
        eval_loss=row["eval_loss"],
        game_id=row["game_id"],
        game_url=row["game_url"],
        player_color=row["player_color"],
        ply=row["ply"],
        tags=json.loads(row["tags"] or "[]"),
        created_at=row["created_at"],
        is_favorite=bool(row["is_favorite"]),
        status=row["status"],
        review_state=ReviewState(**review),
    )


class RotatingPuzzleStore:
    """Capacity-bounded, favorite-aware puzzle storage."""

    def __init__(self, db: Database, cap: int = ROTATION_CAP) -> None:
        self._db = db
        self._cap = cap

    @property
    def cap(self) -> int:
        return self._cap

    # ── Rotation ────────────────────────────────────────────────────

    def save(
        self,
        user_id: str,
        puzzles: Sequence[Puzzle],
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Persist a batch of new puzzles under the rotation cap.

        Deletes the ``overflow`` oldest non-favorites before inserting, so
        the new batch can never be picked for eviction. A batch larger than
        the cap keeps only its last ``cap`` puzzles. Ids already stored for
        the user are skipped and never count toward the overflow.

        Args:
            user_id: Owner of the puzzles.
            puzzles: New puzzles. Stored as non-favorite, status "new",
                with a zeroed review state.
            conn: Join this open transaction instead of starting one.

        Returns:
            The user's new rotation count.

        Raises:
            ValueError: If puzzles is empty.
            ProfileNotFound: If the user has no profile row.
        """
        if not puzzles:
            raise ValueError("No puzzles to save")

        with self._db.transaction(conn) as tx:
            current = self._rotation_count(tx, user_id)
            batch = self._unsaved(tx, user_id, puzzles)
            if not batch:
                logger.info("All %d puzzles already stored for %s", len(puzzles), user_id)
                return current
            if len(batch) > self._cap:
                logger.warning(
                    "Batch of %d puzzles exceeds rotation cap %d; keeping the last %d",
                    len(batch), self._cap, self._cap,
                )
                batch = batch[-self._cap:]

            overflow = max(0, current + len(batch) - self._cap)
            if overflow:
                evicted = self._evict_oldest(tx, user_id, overflow)
                logger.info("Evicted %d oldest puzzles for %s", evicted, user_id)

            inserted = 0
            for puzzle in batch:
                inserted += self._insert(tx, user_id, puzzle)

            new_count = min(self._cap, current - overflow + inserted)
            self._set_rotation_count(tx, user_id, new_count)
        return new_count

    def _unsaved(
        self, conn: sqlite3.Connection, user_id: str, puzzles: Sequence[Puzzle]
    ) -> list[Puzzle]:
        """Puzzles whose id is not stored for the user yet, first copy of each."""
        ids = list({p.id for p in puzzles})
        placeholders = ", ".join("?" * len(ids))
        stored = {
            row["id"]
            for row in conn.execute(
                f"SELECT id FROM puzzles WHERE user_id = ? AND id IN ({placeholders})",
                (user_id, *ids),
            )
        }
        batch = []
        for puzzle in puzzles:
            if puzzle.id not in stored:
                stored.add(puzzle.id)
                batch.append(puzzle)
        return batch

    def _rotation_count(self, conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            "SELECT rotation_count FROM users WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise ProfileNotFound(f"User profile not found: {user_id}")
        return row["rotation_count"]

    def _set_rotation_count(self, conn: sqlite3.Connection, user_id: str, count: int) -> None:
        conn.execute(
            "UPDATE users SET rotation_count = ? WHERE user_id = ?", (count, user_id)
        )

    def _evict_oldest(self, conn: sqlite3.Connection, user_id: str, n: int) -> int:
        cur = conn.execute(
            "DELETE FROM puzzles WHERE rowid IN ("
            "  SELECT rowid FROM puzzles WHERE user_id = ? AND is_favorite = 0"
            "  ORDER BY created_at, rowid LIMIT ?"
            ")",
            (user_id, n),
        )
        return cur.rowcount

    def _insert(self, conn: sqlite3.Connection, user_id: str, puzzle: Puzzle) -> int:
        cur = conn.execute(
            "INSERT INTO puzzles (user_id, id, fen, correct_move, correct_san, "
            "player_move, played_san, opening_name, evaluation, best_evaluation, "
            "eval_loss, game_id, game_url, player_color, ply, tags, created_at, "
            "is_favorite, status, review_state) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 'new', ?) "
            "ON CONFLICT (user_id, id) DO NOTHING",
            (
                user_id,
                puzzle.id,
                puzzle.fen,
                puzzle.correct_move,
                puzzle.correct_san,
                puzzle.player_move,
                puzzle.played_san,
                puzzle.opening_name,
                puzzle.evaluation,
                puzzle.best_evaluation,
                puzzle.eval_loss,
                puzzle.game_id,
                puzzle.game_url,
                puzzle.player_color,
                puzzle.ply,
                json.dumps(list(puzzle.tags)),
                utc_now(),
                json.dumps(asdict(ReviewState())),
            ),
        )
        if cur.rowcount == 0:
            logger.warning("Puzzle %s already stored for %s", puzzle.id, user_id)
        return cur.rowcount

    def rotation_count(self, user_id: str) -> int:
        with self._db.reading() as conn:
            return self._rotation_count(conn, user_id)

    # ── Favorites and deletion ──────────────────────────────────────

    def set_favorite(self, user_id: str, puzzle_id: str, is_favorite: bool) -> int:
        """Favorite or unfavorite a puzzle.

        Favoriting frees a rotation slot. Unfavoriting takes one back; if
        the rotation is full, the oldest non-favorite is evicted first.

        Returns:
            The user's new rotation count.

        Raises:
            PuzzleNotFound: If the puzzle does not exist for this user.
        """
        with self._db.transaction() as tx:
            return self._set_favorite(tx, user_id, puzzle_id, is_favorite)

    def toggle_favorite(self, user_id: str, puzzle_id: str) -> tuple[bool, int]:
        """Flip a puzzle's favorite flag.

        Returns:
            Tuple of (new favorite flag, new rotation count).
        """
        with self._db.transaction() as tx:
            current = self._get_row(tx, user_id, puzzle_id)
            is_favorite = not bool(current["is_favorite"])
            count = self._set_favorite(tx, user_id, puzzle_id, is_favorite)
        return is_favorite, count

    def _set_favorite(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        puzzle_id: str,
        is_favorite: bool,
    ) -> int:
        row = self._get_row(conn, user_id, puzzle_id)
        count = self._rotation_count(conn, user_id)
        if bool(row["is_favorite"]) == is_favorite:
            return count

        if is_favorite:
            count = max(0, count - 1)
        else:
            if count >= self._cap:
                # puzzle is still a favorite here, so it cannot evict itself
                count -= self._evict_oldest(conn, user_id, count - self._cap + 1)
            count += 1

        conn.execute(
            "UPDATE puzzles SET is_favorite = ? WHERE user_id = ? AND id = ?",
            (int(is_favorite), user_id, puzzle_id),
        )
        self._set_rotation_count(conn, user_id, count)
        return count

    def delete(self, user_id: str, puzzle_id: str) -> int:
        """Delete a puzzle; non-favorites give back their rotation slot.

        Returns:
            The user's new rotation count.
        """
        with self._db.transaction() as tx:
            row = self._get_row(tx, user_id, puzzle_id)
            count = self._rotation_count(tx, user_id)
            tx.execute(
                "DELETE FROM puzzles WHERE user_id = ? AND id = ?", (user_id, puzzle_id)
            )
            if not row["is_favorite"]:
                count = max(0, count - 1)
                self._set_rotation_count(tx, user_id, count)
        return count

    def _get_row(self, conn: sqlite3.Connection, user_id: str, puzzle_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM puzzles WHERE user_id = ? AND id = ?", (user_id, puzzle_id)
        ).fetchone()
        if row is None:
            raise PuzzleNotFound(f"Puzzle not found: {puzzle_id}")
        return row

    # ── Playlists ───────────────────────────────────────────────────

    def get(self, user_id: str, puzzle_id: str) -> Puzzle:
        with self._db.reading() as conn:
            return _row_to_puzzle(self._get_row(conn, user_id, puzzle_id))

    def _query(self, sql: str, params: Sequence) -> list[Puzzle]:
        with self._db.reading() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_puzzle(row) for row in rows]

    def recent(self, user_id: str, limit: int = 20) -> list[Puzzle]:
        """Newest non-favorite puzzles first."""
        return self.history(user_id, limit=limit, offset=0)

    def history(self, user_id: str, limit: int = 20, offset: int = 0) -> list[Puzzle]:
        """Page through non-favorite puzzles, newest first."""
        return self._query(
            "SELECT * FROM puzzles WHERE user_id = ? AND is_favorite = 0 "
            "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (user_id, limit, offset),
        )

    def favorites(self, user_id: str) -> list[Puzzle]:
        return self._query(
            "SELECT * FROM puzzles WHERE user_id = ? AND is_favorite = 1 "
            "ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        )

    def hardest(self, user_id: str, limit: int = 20) -> list[Puzzle]:
        """Non-favorite puzzles with the largest eval loss first."""
        return self._query(
            "SELECT * FROM puzzles WHERE user_id = ? AND is_favorite = 0 "
            "ORDER BY eval_loss DESC, created_at DESC LIMIT ?",
            (user_id, limit),
        )

    def by_status(self, user_id: str, status: str, limit: int = 20) -> list[Puzzle]:
        if status not in STATUSES:
            raise ValueError(f"Unknown status {status!r}; expected one of {STATUSES}")
        return self._query(
            "SELECT * FROM puzzles WHERE user_id = ? AND status = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (user_id, status, limit),
        )

    def all_puzzles(self, user_id: str) -> list[Puzzle]:
        return self._query(
            "SELECT * FROM puzzles WHERE user_id = ? ORDER BY created_at, rowid",
            (user_id,),
        )

    def stats(self, user_id: str) -> dict:
        """Return counts by favorite flag and status.

        Returns:
            Dict with keys: total, favorites, rotation, by_status.
        """
        stats = {
            "total": 0,
            "favorites": 0,
            "rotation": 0,
            "by_status": {status: 0 for status in STATUSES},
        }
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT is_favorite, status, COUNT(*) AS n FROM puzzles "
                "WHERE user_id = ? GROUP BY is_favorite, status",
                (user_id,),
            ).fetchall()
        for row in rows:
            stats["total"] += row["n"]
            if row["is_favorite"]:
                stats["favorites"] += row["n"]
            else:
                stats["rotation"] += row["n"]
            stats["by_status"][row["status"]] = (
                stats["by_status"].get(row["status"], 0) + row["n"]
            )
        return stats

    # ── Review ──────────────────────────────────────────────────────

    def record_attempt(
        self,
        user_id: str,
        puzzle_id: str,
        success: bool,
        time_taken: float | None = None,
        move_sequence: Sequence[str] = (),
    ) -> dict:
        """Update a puzzle's review state after a solve attempt.

        Status moves to "solved" on a first-try success, "mastered" once
        it has been solved three times, and "active" after a failure. The
        attempt is also written to the activity log.

        Returns:
            Dict with the new review_state and status.
        """
        now = utc_now()
        with self._db.transaction() as tx:
            row = self._get_row(tx, user_id, puzzle_id)
            state = ReviewState(**json.loads(row["review_state"] or "{}"))
            state.attempts += 1
            state.last_attempt = now
            if success:
                state.is_solved = True
                state.success_count += 1
            else:
                state.fail_count += 1

            status = row["status"]
            if success and state.attempts == 1:
                status = "solved"
            elif success and state.success_count >= _MASTERED_AFTER:
                status = "mastered"
            elif not success:
                status = "active"

            tx.execute(
                "UPDATE puzzles SET review_state = ?, status = ? WHERE user_id = ? AND id = ?",
                (json.dumps(asdict(state)), status, user_id, puzzle_id),
            )
            tx.execute(
                "INSERT INTO activity_logs "
                "(user_id, puzzle_id, result, time_taken, move_sequence, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    user_id,
                    puzzle_id,
                    "success" if success else "fail",
                    time_taken,
                    json.dumps(list(move_sequence)),
                    now,
                ),
            )
            if success and row["status"] not in ("solved", "mastered"):
                tx.execute(
                    "UPDATE users SET total_solved = total_solved + 1 WHERE user_id = ?",
                    (user_id,),
                )
        return {"review_state": asdict(state), "status": status}

    def activity(self, user_id: str, limit: int = 50) -> list[dict]:
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT * FROM activity_logs WHERE user_id = ? "
                "ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [
            {**dict(row), "move_sequence": json.loads(row["move_sequence"])}
            for row in rows
        ]

    def export(self, user_id: str, path: str | Path) -> Path:
        """Write all of a user's puzzles to a JSON file with atomic write."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(".tmp")
        tmp_path.write_text(
            json.dumps(
                [p.to_dict() for p in self.all_puzzles(user_id)],
                indent=2,
                ensure_ascii=False,
            ),
            encoding="utf-8",
        )
        os.replace(tmp_path, target)
        return target


# ---------------------------------------------------------------------------
# CLI interface
# ---------------------------------------------------------------------------


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _cli_list(store: RotatingPuzzleStore, user_id: str, playlist: str, limit: int) -> None:
    """Print a playlist as JSON to stdout."""
    if playlist == "favorites":
        puzzles = store.favorites(user_id)
    elif playlist == "hardest":
        puzzles = store.hardest(user_id, limit=limit)
    elif playlist in STATUSES:
        puzzles = store.by_status(user_id, playlist, limit=limit)
    else:
        puzzles = store.recent(user_id, limit=limit)
    _print_json([p.to_dict() for p in puzzles])


def main() -> None:
    """CLI entry point for puzzles.py."""
    parser = argparse.ArgumentParser(
        description="Puzzle store - list, favorite, delete and export puzzles"
    )
    parser.add_argument("--db", type=str, default=None, help="Database path")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    list_parser = subparsers.add_parser("list", help="List a playlist")
    list_parser.add_argument("user_id", type=str, help="User id")
    list_parser.add_argument(
        "--playlist",
        choices=("recent", "favorites", "hardest", *STATUSES),
        default="recent",
        help="Which playlist to show",
    )
    list_parser.add_argument("--limit", type=int, default=20, help="Max puzzles")

    stats_parser = subparsers.add_parser("stats", help="Show puzzle statistics")
    stats_parser.add_argument("user_id", type=str, help="User id")

    fav_parser = subparsers.add_parser("favorite", help="Toggle a puzzle's favorite flag")
    fav_parser.add_argument("user_id", type=str, help="User id")
    fav_parser.add_argument("puzzle_id", type=str, help="Puzzle id")

    del_parser = subparsers.add_parser("delete", help="Delete a puzzle")
    del_parser.add_argument("user_id", type=str, help="User id")
    del_parser.add_argument("puzzle_id", type=str, help="Puzzle id")

    export_parser = subparsers.add_parser("export", help="Export all puzzles to JSON")
    export_parser.add_argument("user_id", type=str, help="User id")
    export_parser.add_argument("output", type=str, help="Output JSON file")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    settings = load_settings()
    db = Database(args.db or settings.database_path)
    store = RotatingPuzzleStore(db, cap=settings.rotation_cap)

    try:
        if args.command == "list":
            _cli_list(store, args.user_id, args.playlist, args.limit)
        elif args.command == "stats":
            _print_json(store.stats(args.user_id))
        elif args.command == "favorite":
            is_favorite, count = store.toggle_favorite(args.user_id, args.puzzle_id)
            _print_json({"is_favorite": is_favorite, "rotation_count": count})
        elif args.command == "delete":
            _print_json({"rotation_count": store.delete(args.user_id, args.puzzle_id)})
        elif args.command == "export":
            target = store.export(args.user_id, args.output)
            _print_json({"exported_to": str(target)})
    except (PuzzleNotFound, ProfileNotFound) as exc:
        _print_json({"error": str(exc)})
        sys.exit(1)


if __name__ == "__main__":
    main()
