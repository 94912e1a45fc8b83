"""Game replayer and deviation detector.

Replays the opening phase of one game, skips plies that are the
opponent's or still in book, and asks the engine how much each remaining
player move cost. Moves that lose more than the threshold become puzzles.

Two passes over every game: python-chess first parses and verifies the
move text, then the verified SAN list is replayed on a fresh board. Only
positions produced by that replay ever reach the engine.
"""

from __future__ import annotations

import io
import logging

import chess
import chess.pgn

from blunderbook.errors import ReplayInvariantViolation
from blunderbook.models import GameRecord, Move, Puzzle

logger = logging.getLogger(__name__)

UNKNOWN_OPENING = "Unknown Opening"
GAME_URL = "https://lichess.org/{game_id}"


def verify_moves(moves_text: str) -> tuple[str, list[Move]]:
    """Parse move text into a verified move list.

    python-chess stops the mainline at the first illegal or unparseable
    move, so the returned list is always a legal sequence from the
    starting position.

    Args:
        moves_text: Full PGN or bare SAN move text.

    Returns:
        Tuple of (starting FEN, list of verified Moves).
    """
    game = chess.pgn.read_game(io.StringIO(moves_text))
    if game is None:
        return chess.STARTING_FEN, []
    for error in game.errors:
        logger.warning("Move text truncated: %s", error)

    board = game.board()
    start_fen = board.fen()
    verified: list[Move] = []
    for ply, move in enumerate(game.mainline_moves()):
        color = "white" if board.turn == chess.WHITE else "black"
        verified.append(Move(san=board.san(move), uci=move.uci(), color=color, ply=ply))
        board.push(move)
    return start_fen, verified


def _san_or_none(fen: str, uci: str | None) -> str | None:
    if uci is None:
        return None
    board = chess.Board(fen)
    try:
        return board.san(chess.Move.from_uci(uci))
    except (ValueError, AssertionError):
        return None


class GameAnalyzer:
    """Finds opening-phase blunders in a single game.

    Depths, thresholds and the ply bound are policy settings and default
    to the values used in production.
    """

    def __init__(
        self,
        engine,
        book,
        *,
        max_plies: int = 20,
        pre_move_depth: int = 15,
        post_move_depth: int = 12,
        loss_threshold: int = 100,
        lost_position_threshold: int = -250,
    ) -> None:
        """Initialize the analyzer.

        Args:
            engine: Object with ``async evaluate(fen, depth)``, normally an
                EngineChannel.
            book: Object with ``is_known(fen)`` and ``lookup(fen)``,
                normally an OpeningBook.
            max_plies: Plies replayed from the start of the game.
            pre_move_depth: Search depth for the position before the move.
            post_move_depth: Search depth for the position after it.
            loss_threshold: Minimum centipawn loss that makes a puzzle.
            lost_position_threshold: Positions already scored below this
                for the player are never turned into puzzles.
        """
        self._engine = engine
        self._book = book
        self._max_plies = max_plies
        self._pre_move_depth = pre_move_depth
        self._post_move_depth = post_move_depth
        self._loss_threshold = loss_threshold
        self._lost_position_threshold = lost_position_threshold

    async def analyze(self, game: GameRecord, player_color: str) -> list[Puzzle]:
        """Replay a game and return a puzzle for every costly player move.

        Args:
            game: The game to analyze.
            player_color: "white" or "black".

        Returns:
            Puzzles in ply order. A replay failure ends the game early and
            returns the puzzles found so far.

        Raises:
            EngineTimeout: If an evaluation times out.
            EngineUnavailable: If the engine channel is gone.
        """
        start_fen, moves = verify_moves(game.moves)
        board = chess.Board(start_fen)

        skip_until = 0
        if game.opening is not None and game.opening.ply:
            skip_until = max(0, game.opening.ply - 2)

        puzzles: list[Puzzle] = []
        for move in moves[: self._max_plies]:
            fen_before = board.fen()
            try:
                board.push_san(move.san)
            except ValueError as exc:
                violation = ReplayInvariantViolation(
                    f"{game.game_id}: verified move {move.san} at ply {move.ply} "
                    f"failed to apply: {exc}"
                )
                logger.error("%s", violation)
                break
            fen_after = board.fen()

            if move.ply < skip_until:
                continue
            if move.color != player_color:
                continue
            if self._book.is_known(fen_after):
                continue

            puzzle = await self._check_move(game, move, fen_before, fen_after)
            if puzzle is not None:
                puzzles.append(puzzle)

        logger.debug(
            "%s: %d plies replayed, %d puzzles", game.game_id, len(moves), len(puzzles)
        )
        return puzzles

    async def _check_move(
        self,
        game: GameRecord,
        move: Move,
        fen_before: str,
        fen_after: str,
    ) -> Puzzle | None:
        """Evaluate one out-of-book player move.

        Returns:
            A Puzzle if the move lost more than the threshold, else None.
        """
        pre = await self._engine.evaluate(fen_before, self._pre_move_depth)
        post = await self._engine.evaluate(fen_after, self._post_move_depth)

        # post is scored for the opponent, who moves next
        player_score = -post.score_cp
        eval_loss = pre.score_cp - player_score

        if eval_loss <= self._loss_threshold:
            return None
        if pre.score_cp < self._lost_position_threshold:
            logger.debug(
                "%s ply %d: already lost (%d), skipping", game.game_id, move.ply, pre.score_cp
            )
            return None
        if pre.best_move is None:
            return None

        return Puzzle(
            id=f"{game.game_id}-{move.ply}",
            fen=fen_before,
            correct_move=pre.best_move,
            correct_san=_san_or_none(fen_before, pre.best_move),
            player_move=move.uci,
            played_san=move.san,
            opening_name=self._opening_name(game, fen_before),
            evaluation=player_score,
            best_evaluation=pre.score_cp,
            eval_loss=eval_loss,
            game_id=game.game_id,
            game_url=f"{GAME_URL.format(game_id=game.game_id)}#{move.ply}",
            player_color=move.color,
            ply=move.ply,
        )

    def _opening_name(self, game: GameRecord, fen_before: str) -> str:
        if game.opening is not None and game.opening.name:
            return game.opening.name
        entry = self._book.lookup(fen_before)
        if entry is not None:
            return entry["name"]
        return UNKNOWN_OPENING
