"""Exception taxonomy for the opening blunder pipeline.

Run-fatal errors (identity, game source, engine availability) propagate to
the caller. Per-game failures are caught by the pipeline and recorded in
the run's error list instead.
"""

from __future__ import annotations


class BlunderbookError(Exception):
    """Base class for every error raised by this package."""


# ── Engine ──────────────────────────────────────────────────────────


class EngineError(BlunderbookError):
    """Base class for engine channel failures."""


class EngineTimeout(EngineError):
    """No terminal ``bestmove`` arrived before the deadline.

    Retryable: the channel stays usable for the next request.
    """


class EngineUnavailable(EngineError):
    """Channel not started, already shut down, or the engine process died."""


# ── Users and game source ───────────────────────────────────────────


class NoLinkedAccount(BlunderbookError):
    """The user has not linked a Lichess handle."""


class ProfileNotFound(BlunderbookError):
    """No profile row exists for the user."""


class PuzzleNotFound(BlunderbookError):
    """No puzzle with that id exists for the user."""


class GameSourceError(BlunderbookError):
    """The game source failed (transport error or unexpected status)."""


class HandleNotFound(GameSourceError):
    """The game source does not know this handle (HTTP 404)."""


# ── Replay ──────────────────────────────────────────────────────────


class ReplayInvariantViolation(BlunderbookError):
    """A move that passed verification failed to apply during replay."""
