"""Tests for the game replayer and deviation detector.

Uses a scripted evaluator keyed by position, so every score is exact.
Covers: puzzle construction, loss threshold, lost-position suppression,
ply bound, side filtering, book filtering, opening names, truncated
move text and replay failures.
"""

from __future__ import annotations

import chess
import pytest
from unittest.mock import patch

from blunderbook.analyzer import UNKNOWN_OPENING, GameAnalyzer, verify_moves
from blunderbook.errors import EngineTimeout
from blunderbook.models import EvaluationResult, Move, OpeningInfo
from blunderbook.openings import OpeningBook
from tests.fakes import (
    RUY_LOPEZ_LINE,
    RUY_LOPEZ_NAME,
    SHUFFLE_40_PLIES,
    ScriptedEngine,
    fen_after,
    make_game,
)


RUY_LOPEZ_MOVES = ["e4", "e5", "Nf3", "Nc6", "Bb5", "a6", "Ba4", "Nf6"]
RUY_LOPEZ_GAME = f"{RUY_LOPEZ_LINE} 5. h3 Be7 6. O-O b5"

# Every position scores +100 for the side to move: each move loses 200
COSTLY_EVERYWHERE = EvaluationResult(best_move="e2e4", score_cp=100)


def _analyzer(engine, book=None, **kwargs) -> GameAnalyzer:
    return GameAnalyzer(engine, book if book is not None else OpeningBook(), **kwargs)


# ---------------------------------------------------------------------------
# Move verification
# ---------------------------------------------------------------------------


class TestVerifyMoves:

    def test_bare_san_text(self):
        start, moves = verify_moves("1. e4 e5 2. Nf3")
        assert start == chess.STARTING_FEN
        assert [m.san for m in moves] == ["e4", "e5", "Nf3"]
        assert [m.uci for m in moves] == ["e2e4", "e7e5", "g1f3"]
        assert [m.color for m in moves] == ["white", "black", "white"]
        assert [m.ply for m in moves] == [0, 1, 2]

    def test_full_pgn_with_headers(self):
        pgn = '[Event "Rated Blitz game"]\n[White "alice"]\n\n1. d4 d5 2. c4 *\n'
        _, moves = verify_moves(pgn)
        assert [m.san for m in moves] == ["d4", "d5", "c4"]

    def test_truncates_at_illegal_move(self):
        _, moves = verify_moves("1. e4 e5 2. Ke3 Nc6")
        assert [m.san for m in moves] == ["e4", "e5"]

    def test_empty_text(self):
        start, moves = verify_moves("")
        assert start == chess.STARTING_FEN
        assert moves == []


# ---------------------------------------------------------------------------
# Puzzle detection
# ---------------------------------------------------------------------------


class TestDetection:

    @pytest.mark.asyncio
    async def test_ruy_lopez_deviation(self, ruy_lopez_book):
        before_h3 = fen_after(*RUY_LOPEZ_MOVES)
        after_h3 = fen_after(*RUY_LOPEZ_MOVES, "h3")
        engine = ScriptedEngine({
            before_h3: EvaluationResult(best_move="e1g1", score_cp=50),
            after_h3: EvaluationResult(best_move="b7b5", score_cp=100),
        })
        game = make_game("abcd1234", RUY_LOPEZ_GAME)

        puzzles = await _analyzer(engine, ruy_lopez_book).analyze(game, "white")

        assert len(puzzles) == 1
        puzzle = puzzles[0]
        assert puzzle.id == "abcd1234-8"
        assert puzzle.ply == 8
        assert puzzle.fen == before_h3
        assert puzzle.correct_move == "e1g1"
        assert puzzle.correct_san == "O-O"
        assert puzzle.player_move == "h2h3"
        assert puzzle.played_san == "h3"
        assert puzzle.eval_loss == 150
        assert puzzle.evaluation == -100
        assert puzzle.best_evaluation == 50
        assert puzzle.player_color == "white"
        assert puzzle.opening_name == RUY_LOPEZ_NAME
        assert puzzle.game_id == "abcd1234"
        assert puzzle.game_url == "https://lichess.org/abcd1234#8"
        assert puzzle.status == "new"
        assert not puzzle.is_favorite

    @pytest.mark.asyncio
    async def test_book_moves_are_never_evaluated(self, ruy_lopez_book):
        engine = ScriptedEngine(default=COSTLY_EVERYWHERE)
        game = make_game("g1", RUY_LOPEZ_LINE)
        puzzles = await _analyzer(engine, ruy_lopez_book).analyze(game, "white")
        assert puzzles == []
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_loss_above_threshold(self):
        engine = ScriptedEngine({
            chess.STARTING_FEN: EvaluationResult(best_move="e2e4", score_cp=50),
            fen_after("a4"): EvaluationResult(best_move="e7e5", score_cp=80),
        })
        puzzles = await _analyzer(engine).analyze(make_game("g1", "1. a4 e5"), "white")
        assert [p.eval_loss for p in puzzles] == [130]

    @pytest.mark.asyncio
    async def test_loss_below_threshold(self):
        engine = ScriptedEngine({
            chess.STARTING_FEN: EvaluationResult(best_move="e2e4", score_cp=50),
            fen_after("a4"): EvaluationResult(best_move="e7e5", score_cp=30),
        })
        puzzles = await _analyzer(engine).analyze(make_game("g1", "1. a4 e5"), "white")
        assert puzzles == []

    @pytest.mark.asyncio
    async def test_loss_equal_to_threshold_is_not_a_puzzle(self):
        engine = ScriptedEngine({
            chess.STARTING_FEN: EvaluationResult(best_move="e2e4", score_cp=50),
            fen_after("a4"): EvaluationResult(best_move="e7e5", score_cp=50),
        })
        puzzles = await _analyzer(engine).analyze(make_game("g1", "1. a4 e5"), "white")
        assert puzzles == []

    @pytest.mark.asyncio
    async def test_already_lost_position_is_skipped(self):
        engine = ScriptedEngine({
            chess.STARTING_FEN: EvaluationResult(best_move="e2e4", score_cp=-300),
            fen_after("a4"): EvaluationResult(best_move="e7e5", score_cp=500),
        })
        puzzles = await _analyzer(engine).analyze(make_game("g1", "1. a4 e5"), "white")
        assert puzzles == []

    @pytest.mark.asyncio
    async def test_no_best_move_is_skipped(self):
        engine = ScriptedEngine({
            chess.STARTING_FEN: EvaluationResult(best_move=None, score_cp=50),
            fen_after("a4"): EvaluationResult(best_move="e7e5", score_cp=500),
        })
        puzzles = await _analyzer(engine).analyze(make_game("g1", "1. a4 e5"), "white")
        assert puzzles == []

    @pytest.mark.asyncio
    async def test_custom_threshold(self):
        engine = ScriptedEngine({
            chess.STARTING_FEN: EvaluationResult(best_move="e2e4", score_cp=50),
            fen_after("a4"): EvaluationResult(best_move="e7e5", score_cp=30),
        })
        analyzer = _analyzer(engine, loss_threshold=50)
        puzzles = await analyzer.analyze(make_game("g1", "1. a4 e5"), "white")
        assert [p.eval_loss for p in puzzles] == [80]

    @pytest.mark.asyncio
    async def test_search_depths(self):
        engine = ScriptedEngine()
        analyzer = _analyzer(engine, pre_move_depth=15, post_move_depth=12)
        await analyzer.analyze(make_game("g1", "1. a4"), "white")
        assert [depth for _, depth in engine.calls] == [15, 12]

    @pytest.mark.asyncio
    async def test_engine_errors_propagate(self):
        engine = ScriptedEngine(fail_on={chess.STARTING_FEN: EngineTimeout("slow")})
        with pytest.raises(EngineTimeout):
            await _analyzer(engine).analyze(make_game("g1", "1. a4"), "white")


# ---------------------------------------------------------------------------
# Ply bound and filters
# ---------------------------------------------------------------------------


class TestFilters:

    @pytest.mark.asyncio
    async def test_only_first_twenty_plies(self):
        engine = ScriptedEngine(default=COSTLY_EVERYWHERE)
        puzzles = await _analyzer(engine).analyze(make_game("g1", SHUFFLE_40_PLIES), "white")
        assert [p.ply for p in puzzles] == [0, 2, 4, 6, 8, 10, 12, 14, 16, 18]
        assert len(engine.calls) == 20

    @pytest.mark.asyncio
    async def test_custom_ply_bound(self):
        engine = ScriptedEngine(default=COSTLY_EVERYWHERE)
        analyzer = _analyzer(engine, max_plies=6)
        puzzles = await analyzer.analyze(make_game("g1", SHUFFLE_40_PLIES), "white")
        assert [p.ply for p in puzzles] == [0, 2, 4]

    @pytest.mark.asyncio
    async def test_black_only_gets_black_moves(self):
        engine = ScriptedEngine(default=COSTLY_EVERYWHERE)
        puzzles = await _analyzer(engine).analyze(make_game("g1", SHUFFLE_40_PLIES), "black")
        assert [p.ply for p in puzzles] == [1, 3, 5, 7, 9, 11, 13, 15, 17, 19]
        assert all(p.player_color == "black" for p in puzzles)

    @pytest.mark.asyncio
    async def test_opening_ply_skips_known_prefix(self):
        engine = ScriptedEngine(default=COSTLY_EVERYWHERE)
        game = make_game(
            "g1",
            "1. Nf3 Nf6 2. Ng1 Ng8 3. Nf3 Nf6 4. Ng1",
            opening=OpeningInfo(name="Zukertort Opening", eco="A04", ply=6),
        )
        puzzles = await _analyzer(engine).analyze(game, "white")
        assert [p.id for p in puzzles] == ["g1-4", "g1-6"]

    @pytest.mark.asyncio
    async def test_analysis_is_deterministic(self, ruy_lopez_book):
        engine = ScriptedEngine(default=COSTLY_EVERYWHERE)
        analyzer = _analyzer(engine, ruy_lopez_book)
        game = make_game("g1", RUY_LOPEZ_GAME)
        first = await analyzer.analyze(game, "white")
        second = await analyzer.analyze(game, "white")
        assert first == second
        assert [p.ply for p in first] == [8, 10]

    @pytest.mark.asyncio
    async def test_truncated_game_keeps_legal_prefix(self):
        engine = ScriptedEngine(default=COSTLY_EVERYWHERE)
        game = make_game("g1", "1. e4 e5 2. Ke3 Nc6 3. Bc4")
        puzzles = await _analyzer(engine).analyze(game, "white")
        assert [p.ply for p in puzzles] == [0]

    @pytest.mark.asyncio
    async def test_replay_failure_stops_the_game(self):
        engine = ScriptedEngine(default=COSTLY_EVERYWHERE)
        bogus = [
            Move(san="a4", uci="a2a4", color="white", ply=0),
            Move(san="e5", uci="e7e5", color="black", ply=1),
            Move(san="Qh8", uci="d1h8", color="white", ply=2),
            Move(san="Nc6", uci="b8c6", color="black", ply=3),
        ]
        with patch(
            "blunderbook.analyzer.verify_moves",
            return_value=(chess.STARTING_FEN, bogus),
        ):
            puzzles = await _analyzer(engine).analyze(make_game("g1", "ignored"), "white")
        assert [p.ply for p in puzzles] == [0]


# ---------------------------------------------------------------------------
# Opening names
# ---------------------------------------------------------------------------


class TestOpeningName:

    @pytest.mark.asyncio
    async def test_game_metadata_wins(self, ruy_lopez_book):
        engine = ScriptedEngine({
            fen_after(*RUY_LOPEZ_MOVES): EvaluationResult(best_move="e1g1", score_cp=50),
            fen_after(*RUY_LOPEZ_MOVES, "h3"): EvaluationResult(best_move="b7b5", score_cp=100),
        })
        game = make_game(
            "g1", RUY_LOPEZ_GAME,
            opening=OpeningInfo(name="Ruy Lopez: Closed", eco="C84"),
        )
        puzzles = await _analyzer(engine, ruy_lopez_book).analyze(game, "white")
        assert puzzles[0].opening_name == "Ruy Lopez: Closed"

    @pytest.mark.asyncio
    async def test_unknown_when_nothing_matches(self):
        engine = ScriptedEngine(default=COSTLY_EVERYWHERE)
        puzzles = await _analyzer(engine).analyze(make_game("g1", "1. a4"), "white")
        assert puzzles[0].opening_name == UNKNOWN_OPENING
