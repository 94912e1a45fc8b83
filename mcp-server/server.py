"""MCP server for the opening blunder trainer.

Exposes account linking, game analysis and the puzzle store as FastMCP
tools. Each analysis opens its own Stockfish channel and Lichess client
and closes them when the run ends. Logs go to stderr; stdout carries the
MCP protocol.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Add project root and mcp-server dir to path for imports
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_MCP_SERVER_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(_PROJECT_ROOT))
sys.path.insert(0, str(_MCP_SERVER_DIR))

from mcp.server.fastmcp import FastMCP

from blunderbook.config import load_settings
from blunderbook.db import Database
from blunderbook.engine import EngineChannel
from blunderbook.errors import BlunderbookError, ProfileNotFound
from blunderbook.lichess import LichessClient
from blunderbook.openings import OpeningBook
from blunderbook.pipeline import build_pipeline
from blunderbook.profiles import UserProfileStore
from blunderbook.puzzles import STATUSES, RotatingPuzzleStore

from response_schemas import (  # noqa: E402
    minify_analysis_result,
    minify_profile,
    minify_puzzle,
)

logger = logging.getLogger(__name__)

mcp = FastMCP("opening-blunder-trainer")

_settings = load_settings()
_db: Database | None = None
_book: OpeningBook | None = None

_PLAYLISTS = ("recent", "history", "favorites", "hardest", *STATUSES)


def _get_database() -> Database:
    """Open the puzzle database on first use."""
    global _db
    if _db is None:
        _db = Database(_settings.database_path)
    return _db


def _get_book() -> OpeningBook:
    """Load the opening book on first use (empty if not built)."""
    global _book
    if _book is None:
        _book = OpeningBook.from_database(str(_settings.openings_db_path))
    return _book


def _open_engine() -> EngineChannel:
    return EngineChannel.for_stockfish(
        _settings.stockfish_path,
        timeout=_settings.engine_timeout,
        mate_score=_settings.mate_score,
    )


def _open_source() -> LichessClient:
    return LichessClient(_settings.lichess_url, _settings.lichess_token)


async def _run_analysis(user_id: str, quick: bool, max_games: int | None) -> dict:
    """Run one analysis and return the minified result or an error dict."""
    db = _get_database()
    if not UserProfileStore(db).has_linked_account(user_id):
        return {"error": f"No Lichess account linked for {user_id}. Link one first."}

    try:
        async with _open_engine() as engine, _open_source() as source:
            pipeline = build_pipeline(db, engine, _get_book(), source, _settings)
            if quick:
                result = await pipeline.run_quick(user_id)
            else:
                result = await pipeline.run(user_id, max_games=max_games)
    except (BlunderbookError, FileNotFoundError) as exc:
        logger.warning("Analysis for %s failed: %s", user_id, exc)
        return {"error": str(exc)}

    return minify_analysis_result(result.to_dict())


# ---------------------------------------------------------------------------
# Account tools
# ---------------------------------------------------------------------------


@mcp.tool()
def link_lichess_account(user_id: str, lichess_username: str) -> dict:
    """Link a Lichess account to a user, creating the profile if needed.

    Args:
        user_id: Local user id.
        lichess_username: Lichess handle whose games will be analyzed.

    Returns:
        Profile dict with user_id, lichess_username, rotation_count, last_scan.
    """
    profiles = UserProfileStore(_get_database())
    try:
        profiles.create_profile(user_id)
        profile = profiles.link_lichess_account(user_id, lichess_username)
    except (BlunderbookError, ValueError) as exc:
        return {"error": str(exc)}
    return minify_profile(profile)


@mcp.tool()
def update_settings(user_id: str, settings: dict) -> dict:
    """Merge new values into a user's settings.

    Args:
        user_id: Local user id.
        settings: Keys to set, e.g. {"minElo": 1200}.

    Returns:
        Dict with the full merged settings.
    """
    try:
        merged = UserProfileStore(_get_database()).update_settings(user_id, settings)
    except BlunderbookError as exc:
        return {"error": str(exc)}
    return {"settings": merged}


# ---------------------------------------------------------------------------
# Analysis tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def analyze_games(user_id: str, max_games: int = 10) -> dict:
    """Analyze the user's most recent Lichess games for opening blunders.

    Games already analyzed are skipped. New puzzles enter the rotation,
    evicting the oldest non-favorites when it is full.

    Args:
        user_id: Local user id with a linked Lichess account.
        max_games: Number of recent games to fetch (default 10).

    Returns:
        Dict with games_fetched, games_analyzed, games_skipped,
        puzzles_generated, rotation_count, ok, errors.
    """
    if max_games < 1:
        return {"error": f"max_games must be at least 1, got {max_games}"}
    return await _run_analysis(user_id, quick=False, max_games=max_games)


@mcp.tool()
async def quick_analyze(user_id: str) -> dict:
    """Analyze only the user's single most recent game.

    Args:
        user_id: Local user id with a linked Lichess account.

    Returns:
        Same shape as analyze_games.
    """
    return await _run_analysis(user_id, quick=True, max_games=None)


# ---------------------------------------------------------------------------
# Puzzle tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_puzzles(
    user_id: str,
    playlist: str = "recent",
    limit: int = 20,
    offset: int = 0,
) -> dict:
    """List puzzles from one playlist.

    Args:
        user_id: Local user id.
        playlist: recent, history, favorites, hardest, or a status
            (new, active, solved, mastered).
        limit: Max puzzles to return.
        offset: Paging offset (history only).

    Returns:
        Dict with playlist, count, puzzles.
    """
    if playlist not in _PLAYLISTS:
        return {"error": f"Unknown playlist {playlist!r}. Choose from {list(_PLAYLISTS)}"}

    store = RotatingPuzzleStore(_get_database(), cap=_settings.rotation_cap)
    if playlist == "recent":
        puzzles = store.recent(user_id, limit=limit)
    elif playlist == "history":
        puzzles = store.history(user_id, limit=limit, offset=offset)
    elif playlist == "favorites":
        puzzles = store.favorites(user_id)[:limit]
    elif playlist == "hardest":
        puzzles = store.hardest(user_id, limit=limit)
    else:
        puzzles = store.by_status(user_id, playlist, limit=limit)

    return {
        "playlist": playlist,
        "count": len(puzzles),
        "puzzles": [minify_puzzle(p.to_dict()) for p in puzzles],
    }


@mcp.tool()
def toggle_favorite(user_id: str, puzzle_id: str) -> dict:
    """Favorite or unfavorite a puzzle.

    Favorites are kept forever and do not count toward the rotation.

    Args:
        user_id: Local user id.
        puzzle_id: Puzzle id ("<gameId>-<ply>").

    Returns:
        Dict with puzzle_id, is_favorite, rotation_count.
    """
    store = RotatingPuzzleStore(_get_database(), cap=_settings.rotation_cap)
    try:
        is_favorite, count = store.toggle_favorite(user_id, puzzle_id)
    except BlunderbookError as exc:
        return {"error": str(exc)}
    return {"puzzle_id": puzzle_id, "is_favorite": is_favorite, "rotation_count": count}


@mcp.tool()
def delete_puzzle(user_id: str, puzzle_id: str) -> dict:
    """Delete a puzzle.

    Args:
        user_id: Local user id.
        puzzle_id: Puzzle id.

    Returns:
        Dict with puzzle_id, deleted, rotation_count.
    """
    store = RotatingPuzzleStore(_get_database(), cap=_settings.rotation_cap)
    try:
        count = store.delete(user_id, puzzle_id)
    except BlunderbookError as exc:
        return {"error": str(exc)}
    return {"puzzle_id": puzzle_id, "deleted": True, "rotation_count": count}


@mcp.tool()
def record_puzzle_attempt(
    user_id: str,
    puzzle_id: str,
    success: bool,
    time_taken: float | None = None,
    move_sequence: list[str] | None = None,
) -> dict:
    """Record a solve attempt and update the puzzle's status.

    Args:
        user_id: Local user id.
        puzzle_id: Puzzle id.
        success: Whether the user found the correct move.
        time_taken: Seconds spent, if known.
        move_sequence: Moves the user tried, in UCI.

    Returns:
        Dict with puzzle_id, status, attempts, success_count, fail_count.
    """
    store = RotatingPuzzleStore(_get_database(), cap=_settings.rotation_cap)
    try:
        outcome = store.record_attempt(
            user_id, puzzle_id, success, time_taken, move_sequence or ()
        )
    except BlunderbookError as exc:
        return {"error": str(exc)}
    review = outcome["review_state"]
    return {
        "puzzle_id": puzzle_id,
        "status": outcome["status"],
        "attempts": review["attempts"],
        "success_count": review["success_count"],
        "fail_count": review["fail_count"],
    }


@mcp.tool()
def puzzle_stats(user_id: str) -> dict:
    """Summarize a user's puzzles.

    Args:
        user_id: Local user id.

    Returns:
        Dict with total, favorites, rotation, by_status.
    """
    try:
        UserProfileStore(_get_database()).get_profile(user_id)
    except ProfileNotFound as exc:
        return {"error": str(exc)}
    store = RotatingPuzzleStore(_get_database(), cap=_settings.rotation_cap)
    return store.stats(user_id)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()
