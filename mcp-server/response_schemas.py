"""Response schemas and minification for MCP tool responses.

Minifies MCP tool return values to reduce LLM context token waste. The
puzzle store and CLI exports keep full records; only MCP return values
are trimmed.
"""

from __future__ import annotations

import os


# ---------------------------------------------------------------------------
# Minification functions
# ---------------------------------------------------------------------------


def minify_puzzle(puzzle: dict) -> dict:
    """Minify a Puzzle dict for MCP response.

    Keeps what is needed to present and check the puzzle. Collapses the
    review state to an attempt count and drops the anchor ply and
    creation timestamp.

    Args:
        puzzle: Full Puzzle dict (from Puzzle.to_dict).

    Returns:
        Minified dict.
    """
    result = {}

    for key in (
        "id", "fen", "correct_move", "correct_san", "played_san",
        "opening_name", "eval_loss", "player_color", "game_url",
        "is_favorite", "status",
    ):
        if key in puzzle:
            result[key] = puzzle[key]

    review = puzzle.get("review_state") or {}
    result["attempts"] = review.get("attempts", 0) if isinstance(review, dict) else 0

    # Removed fields: player_move, evaluation, best_evaluation, game_id,
    # ply, tags, created_at, review_state

    return result


def minify_analysis_result(result: dict) -> dict:
    """Minify an AnalysisResult dict for MCP response.

    Keeps counts and the error list; errors are flattened to
    "game_id: message" strings.

    Args:
        result: Full AnalysisResult dict (from AnalysisResult.to_dict).

    Returns:
        Minified dict.
    """
    minified = {}
    for key in (
        "games_fetched", "games_analyzed", "games_skipped",
        "puzzles_generated", "rotation_count", "ok",
    ):
        minified[key] = result.get(key)

    minified["errors"] = [
        f"{e.get('game_id')}: {e.get('error')}" for e in result.get("errors", [])
    ]
    return minified


def minify_profile(profile: dict) -> dict:
    """Minify a user profile dict for MCP response."""
    return {
        "user_id": profile.get("user_id"),
        "lichess_username": profile.get("lichess_username"),
        "rotation_count": profile.get("rotation_count"),
        "last_scan": profile.get("last_scan"),
    }


# ---------------------------------------------------------------------------
# Validation schemas (dict-based)
# ---------------------------------------------------------------------------

PUZZLE_SCHEMA = {
    "id": str,
    "fen": str,
    "correct_move": str,
    "correct_san": (str, type(None)),
    "played_san": str,
    "opening_name": str,
    "eval_loss": int,
    "player_color": str,
    "game_url": str,
    "is_favorite": bool,
    "status": str,
    "attempts": int,
}

PUZZLE_LIST_SCHEMA = {
    "playlist": str,
    "count": int,
    "puzzles": list,
}

ANALYSIS_RESULT_SCHEMA = {
    "games_fetched": int,
    "games_analyzed": int,
    "games_skipped": int,
    "puzzles_generated": int,
    "rotation_count": (int, type(None)),
    "ok": bool,
    "errors": list,
}

PROFILE_SCHEMA = {
    "user_id": str,
    "lichess_username": (str, type(None)),
    "rotation_count": int,
    "last_scan": (str, type(None)),
}

STATS_SCHEMA = {
    "total": int,
    "favorites": int,
    "rotation": int,
    "by_status": dict,
}

ERROR_SCHEMA = {
    "error": str,
}


def _type_error(key: str, value, expected: tuple) -> str | None:
    # bool is an int subclass; a flag must not pass as a count
    if isinstance(value, bool) and bool not in expected:
        return f"Key '{key}': expected non-bool, got bool"
    if isinstance(value, expected):
        return None
    names = " | ".join(t.__name__ for t in expected)
    return f"Key '{key}': expected {names}, got {type(value).__name__}"


def validate_response(response: dict, schema: dict) -> list[str]:
    """Check a tool response against one of the schemas above.

    A no-op unless BLUNDERBOOK_VALIDATE=1, so production responses are
    never inspected.

    Returns:
        Problems found, one string each; empty when the response conforms.
    """
    if os.environ.get("BLUNDERBOOK_VALIDATE") != "1":
        return []
    if not isinstance(response, dict):
        return [f"Response is not a dict: {type(response).__name__}"]

    problems = [f"Missing key: {key}" for key in schema if key not in response]
    for key, expected in schema.items():
        if key not in response:
            continue
        if not isinstance(expected, tuple):
            expected = (expected,)
        problem = _type_error(key, response[key], expected)
        if problem:
            problems.append(problem)
    return problems
