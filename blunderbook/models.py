"""Shared data models for the opening blunder pipeline.

Puzzle and AnalysisResult are the shared contract between the pipeline,
the puzzle store, the CLI and the MCP server.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

DEFAULT_TAGS = ("Opening Blunder",)


@dataclass(frozen=True)
class Move:
    """A verified move: produced only by replaying a validated game record."""

    san: str
    uci: str
    color: str
    ply: int


@dataclass(frozen=True)
class EvaluationResult:
    """Engine verdict for one position, from the side to move's viewpoint."""

    best_move: str | None
    score_cp: int


@dataclass
class OpeningInfo:
    """Opening metadata supplied by the game source."""

    name: str | None = None
    eco: str | None = None
    ply: int | None = None


@dataclass
class GameRecord:
    """One completed game as returned by the game source."""

    game_id: str
    moves: str
    white: str | None = None
    black: str | None = None
    opening: OpeningInfo | None = None
    perf: str | None = None
    created_at: int | None = None

    @classmethod
    def from_lichess(cls, payload: dict) -> GameRecord:
        """Build a GameRecord from one Lichess games-export JSON object.

        Prefers the full PGN (``pgnInJson=true``) and falls back to the
        bare SAN ``moves`` string. Anonymous and AI players have no user
        entry, so their handle is None.
        """
        players = payload.get("players") or {}

        def _handle(color: str) -> str | None:
            user = (players.get(color) or {}).get("user") or {}
            return user.get("name") or user.get("id")

        opening = None
        raw_opening = payload.get("opening")
        if raw_opening:
            opening = OpeningInfo(
                name=raw_opening.get("name"),
                eco=raw_opening.get("eco"),
                ply=raw_opening.get("ply"),
            )

        return cls(
            game_id=payload["id"],
            moves=payload.get("pgn") or payload.get("moves") or "",
            white=_handle("white"),
            black=_handle("black"),
            opening=opening,
            perf=payload.get("perf") or payload.get("speed"),
            created_at=payload.get("createdAt"),
        )


@dataclass
class ReviewState:
    is_solved: bool = False
    attempts: int = 0
    last_attempt: str | None = None
    success_count: int = 0
    fail_count: int = 0


@dataclass
class Puzzle:
    """A position where the player left theory with a costly move."""

    id: str
    fen: str
    correct_move: str
    correct_san: str | None
    player_move: str
    played_san: str
    opening_name: str
    evaluation: int
    best_evaluation: int
    eval_loss: int
    game_id: str
    game_url: str
    player_color: str
    ply: int
    tags: list[str] = field(default_factory=lambda: list(DEFAULT_TAGS))
    created_at: str | None = None
    is_favorite: bool = False
    status: str = "new"
    review_state: ReviewState = field(default_factory=ReviewState)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProcessedGameRecord:
    game_id: str
    user_id: str
    analyzed_at: str
    puzzle_count: int


@dataclass
class ProgressUpdate:
    """One progress notification emitted by a pipeline run."""

    stage: str
    progress: int
    current_game: int | None = None
    total_games: int | None = None
    result: AnalysisResult | None = None


@dataclass
class GameError:
    game_id: str
    error: str


@dataclass
class AnalysisResult:
    """Aggregate outcome of one pipeline run."""

    games_fetched: int = 0
    games_analyzed: int = 0
    games_skipped: int = 0
    puzzles_generated: int = 0
    errors: list[GameError] = field(default_factory=list)
    rotation_count: int | None = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        data = asdict(self)
        data["ok"] = self.ok
        return data
