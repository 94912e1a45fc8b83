"""Opening book keyed by position.

Answers two questions about a FEN: is it still known theory, and if it
ends a named line, what is that line called. Positions are keyed by EPD
(FEN without move counters) so transpositions resolve to the same entry.

The book is loaded from the ``book_positions`` table written by
blunderbook/build_openings_db.py, or built in memory from PGN lines.

Usage:
    from blunderbook.openings import OpeningBook
    book = OpeningBook.from_database()
    book.is_known(fen)
"""

import io
import logging
import os
import sqlite3

import chess
import chess.pgn

logger = logging.getLogger(__name__)

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
_PROJECT_ROOT = os.path.dirname(_PACKAGE_DIR)
_DEFAULT_DB = os.path.join(_PROJECT_ROOT, "data", "openings.db")


def _epd(fen):
    """Return the EPD key for a FEN, or None if the FEN is invalid."""
    try:
        return chess.Board(fen).epd()
    except ValueError:
        return None


def line_positions(pgn_text):
    """Replay an opening line and yield the EPD after every move.

    Stops at the first move that does not parse or is illegal.

    Args:
        pgn_text: Move text, e.g. "1. e4 e5 2. Nf3".

    Returns:
        List of EPD strings, one per ply.
    """
    game = chess.pgn.read_game(io.StringIO(pgn_text))
    if game is None:
        return []
    board = game.board()
    positions = []
    for move in game.mainline_moves():
        board.push(move)
        positions.append(board.epd())
    return positions


class OpeningBook:
    """Position-keyed opening theory lookup.

    Every position along an indexed line counts as book. Only the final
    position of a line carries its name and ECO code.
    """

    def __init__(self, entries=None):
        # epd -> {"name", "eco"} for named positions, None for bare theory
        self._entries = dict(entries or {})

    @classmethod
    def from_lines(cls, lines):
        """Build a book from (eco, name, pgn) tuples.

        When several lines end in the same position the first name wins.
        """
        book = cls()
        for eco, name, pgn in lines:
            book.add_line(eco, name, pgn)
        return book

    @classmethod
    def from_database(cls, db_path=None):
        """Load a book from the ``book_positions`` table.

        A missing database or table yields an empty book, which makes every
        position count as out of book.
        """
        path = db_path or _DEFAULT_DB
        if not os.path.exists(path):
            logger.warning(
                "Openings database not found at %s; run "
                "blunderbook/build_openings_db.py. Using an empty book.",
                path,
            )
            return cls()
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        try:
            rows = conn.execute(
                "SELECT epd, eco, name FROM book_positions"
            ).fetchall()
        except sqlite3.Error as exc:
            logger.warning("Could not read book positions from %s: %s", path, exc)
            return cls()
        finally:
            conn.close()

        entries = {}
        for row in rows:
            if row["name"]:
                entries[row["epd"]] = {"name": row["name"], "eco": row["eco"]}
            else:
                entries[row["epd"]] = None
        logger.info("Loaded %d book positions from %s", len(entries), path)
        return cls(entries)

    def add_line(self, eco, name, pgn):
        positions = line_positions(pgn)
        if not positions:
            return
        for epd in positions[:-1]:
            self._entries.setdefault(epd, None)
        final = positions[-1]
        if self._entries.get(final) is None:
            self._entries[final] = {"name": name, "eco": eco}

    def __len__(self):
        return len(self._entries)

    def items(self):
        return self._entries.items()

    # ── Lookups ─────────────────────────────────────────────────────

    def is_known(self, fen):
        """Return True if the position lies on any indexed opening line."""
        key = _epd(fen)
        return key is not None and key in self._entries

    def lookup(self, fen):
        """Return {"name", "eco"} if the position ends a named line, else None."""
        key = _epd(fen)
        if key is None:
            return None
        entry = self._entries.get(key)
        return dict(entry) if entry else None
