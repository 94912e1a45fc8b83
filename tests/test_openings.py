"""Tests for the opening book and the openings database builder.

Covers:
- Book membership along a line, names only at line ends
- Transpositions resolving to the same entry
- Invalid FEN handling
- Building book_positions from TSV rows and loading it back
- Graceful degradation with a missing database or table
"""

from __future__ import annotations

import sqlite3

import chess

from blunderbook.build_openings_db import opening_rows, write_database
from blunderbook.openings import OpeningBook, line_positions
from tests.fakes import RUY_LOPEZ_NAME, fen_after


# ---------------------------------------------------------------------------
# In-memory book
# ---------------------------------------------------------------------------


class TestOpeningBook:

    def test_every_position_on_the_line_is_known(self, ruy_lopez_book):
        line = ["e4", "e5", "Nf3", "Nc6", "Bb5", "a6", "Ba4", "Nf6"]
        for i in range(1, len(line) + 1):
            assert ruy_lopez_book.is_known(fen_after(*line[:i])), line[:i]

    def test_deviation_is_out_of_book(self, ruy_lopez_book):
        assert not ruy_lopez_book.is_known(fen_after("e4", "e5", "Nf3", "Nc6", "Bc4"))
        assert not ruy_lopez_book.is_known(fen_after("d4"))

    def test_starting_position_is_not_a_line_position(self, ruy_lopez_book):
        assert not ruy_lopez_book.is_known(chess.STARTING_FEN)

    def test_lookup_only_names_line_end(self, ruy_lopez_book):
        end = fen_after("e4", "e5", "Nf3", "Nc6", "Bb5", "a6", "Ba4", "Nf6")
        assert ruy_lopez_book.lookup(end) == {"name": RUY_LOPEZ_NAME, "eco": "C77"}
        assert ruy_lopez_book.lookup(fen_after("e4", "e5")) is None

    def test_lookup_returns_a_copy(self, ruy_lopez_book):
        end = fen_after("e4", "e5", "Nf3", "Nc6", "Bb5", "a6", "Ba4", "Nf6")
        ruy_lopez_book.lookup(end)["name"] = "changed"
        assert ruy_lopez_book.lookup(end)["name"] == RUY_LOPEZ_NAME

    def test_move_counters_are_ignored(self, ruy_lopez_book):
        fen = fen_after("e4", "e5")
        board_part = " ".join(fen.split()[:4])
        assert ruy_lopez_book.is_known(f"{board_part} 17 42")

    def test_transposition_resolves_to_same_entry(self):
        book = OpeningBook.from_lines([
            ("D02", "Queen's Pawn Game: Zukertort Variation", "1. d4 d5 2. Nf3"),
        ])
        transposed = fen_after("Nf3", "d5", "d4")
        assert book.is_known(transposed)
        assert book.lookup(transposed)["eco"] == "D02"

    def test_first_name_wins(self):
        book = OpeningBook.from_lines([
            ("B00", "King's Pawn Game", "1. e4"),
            ("B00", "King's Pawn Opening", "1. e4"),
        ])
        assert book.lookup(fen_after("e4"))["name"] == "King's Pawn Game"

    def test_longer_line_keeps_shorter_name(self):
        book = OpeningBook.from_lines([
            ("C20", "King's Pawn Game", "1. e4 e5"),
            ("C40", "King's Knight Opening", "1. e4 e5 2. Nf3"),
        ])
        assert book.lookup(fen_after("e4", "e5"))["name"] == "King's Pawn Game"
        assert book.lookup(fen_after("e4", "e5", "Nf3"))["name"] == "King's Knight Opening"

    def test_invalid_fen(self, ruy_lopez_book):
        assert not ruy_lopez_book.is_known("not a fen")
        assert ruy_lopez_book.lookup("not a fen") is None

    def test_empty_book(self):
        book = OpeningBook()
        assert len(book) == 0
        assert not book.is_known(fen_after("e4"))

    def test_line_positions_stops_at_illegal_move(self):
        assert len(line_positions("1. e4 e5 2. Ke3 Nc6")) == 2


# ---------------------------------------------------------------------------
# Database builder and loader
# ---------------------------------------------------------------------------


_ROWS = [
    {"eco": "C77", "name": RUY_LOPEZ_NAME, "pgn": "1. e4 e5 2. Nf3 Nc6 3. Bb5 a6 4. Ba4 Nf6"},
    {"eco": "C60", "name": "Ruy Lopez", "pgn": "1. e4 e5 2. Nf3 Nc6 3. Bb5"},
    {"eco": "A00", "name": "Broken Row", "pgn": ""},
]


class TestBuildDatabase:

    def test_parse_rows_skips_empty_pgn(self):
        openings = opening_rows(_ROWS)
        assert [o["eco"] for o in openings] == ["C77", "C60"]
        ruy = openings[1]
        assert ruy["uci"] == "e2e4 e7e5 g1f3 b8c6 f1b5"
        assert ruy["plies"] == 5
        assert ruy["epd"] == chess.Board(fen_after("e4", "e5", "Nf3", "Nc6", "Bb5")).epd()

    def test_built_database_loads_into_book(self, tmp_path):
        db_path = str(tmp_path / "openings.db")
        assert write_database(opening_rows(_ROWS), db_path) == (2, 8)

        book = OpeningBook.from_database(db_path)
        assert len(book) == 8
        assert book.is_known(fen_after("e4", "e5", "Nf3"))
        assert book.lookup(fen_after("e4", "e5", "Nf3", "Nc6", "Bb5"))["name"] == "Ruy Lopez"
        end = fen_after("e4", "e5", "Nf3", "Nc6", "Bb5", "a6", "Ba4", "Nf6")
        assert book.lookup(end)["eco"] == "C77"

    def test_openings_table_written(self, tmp_path):
        db_path = str(tmp_path / "openings.db")
        write_database(opening_rows(_ROWS), db_path)
        conn = sqlite3.connect(db_path)
        try:
            count = conn.execute("SELECT COUNT(*) FROM openings").fetchone()[0]
        finally:
            conn.close()
        assert count == 2

    def test_missing_database_gives_empty_book(self, tmp_path):
        book = OpeningBook.from_database(str(tmp_path / "nope.db"))
        assert len(book) == 0

    def test_missing_table_gives_empty_book(self, tmp_path):
        db_path = str(tmp_path / "other.db")
        conn = sqlite3.connect(db_path)
        conn.execute("CREATE TABLE unrelated (x INTEGER)")
        conn.commit()
        conn.close()
        assert len(OpeningBook.from_database(db_path)) == 0
