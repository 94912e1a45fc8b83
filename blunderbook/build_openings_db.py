#!/usr/bin/env python3
"""Build the opening book database from the Lichess chess-openings TSVs.

Fetches a.tsv .. e.tsv (cached under data/openings_raw/) and writes
data/openings.db with two tables:
  - openings        one row per named line: eco, name, pgn, uci, final epd
  - book_positions  every position on any line, keyed by EPD; named where
                    a line ends there (read by OpeningBook.from_database)

Usage:
    python -m blunderbook.build_openings_db
    python -m blunderbook.build_openings_db --db /tmp/openings.db --refresh
"""

import argparse
import csv
import io
import os
import sqlite3
import sys
import tempfile
import urllib.request
from contextlib import closing

import chess.pgn

from blunderbook.openings import OpeningBook

_SOURCE_URL = "https://github.com/lichess-org/chess-openings/raw/master/{name}"
_VOLUMES = "abcde"

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
_DATA_DIR = os.path.join(os.path.dirname(_PACKAGE_DIR), "data")
_RAW_DIR = os.path.join(_DATA_DIR, "openings_raw")
_DB_PATH = os.path.join(_DATA_DIR, "openings.db")

_TABLES = """
CREATE TABLE openings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    eco TEXT NOT NULL,
    name TEXT NOT NULL,
    pgn TEXT NOT NULL,
    uci TEXT NOT NULL,
    epd TEXT NOT NULL,
    plies INTEGER NOT NULL
);
CREATE INDEX idx_openings_eco ON openings (eco);
CREATE INDEX idx_openings_epd ON openings (epd);

CREATE TABLE book_positions (
    epd TEXT PRIMARY KEY,
    eco TEXT,
    name TEXT
);
"""


def fetch_volumes(raw_dir=_RAW_DIR, refresh=False):
    """Return local paths of the five TSV volumes, downloading missing ones.

    Raises:
        OSError: If a download fails.
    """
    os.makedirs(raw_dir, exist_ok=True)
    paths = []
    for volume in _VOLUMES:
        name = f"{volume}.tsv"
        path = os.path.join(raw_dir, name)
        if refresh or not os.path.exists(path):
            url = _SOURCE_URL.format(name=name)
            print(f"  fetch  {url}")
            urllib.request.urlretrieve(url, path)
        else:
            print(f"  cached {name}")
        paths.append(path)
    return paths


def opening_rows(rows):
    """Turn TSV records (eco, name, pgn) into ``openings`` table rows.

    Records without move text are dropped. The move text is replayed so
    each row also carries its UCI moves and final position.
    """
    result = []
    for record in rows:
        pgn = (record.get("pgn") or "").strip()
        if not pgn:
            continue
        game = chess.pgn.read_game(io.StringIO(pgn))
        board = game.board()
        moves = []
        for move in game.mainline_moves():
            moves.append(move.uci())
            board.push(move)
        result.append({
            "eco": (record.get("eco") or "").strip(),
            "name": (record.get("name") or "").strip(),
            "pgn": pgn,
            "uci": " ".join(moves),
            "epd": board.epd(),
            "plies": len(moves),
        })
    return result


def read_volumes(paths):
    rows = []
    for path in paths:
        with open(path, encoding="utf-8", newline="") as f:
            rows.extend(opening_rows(csv.DictReader(f, delimiter="\t")))
    return rows


def write_database(rows, db_path=_DB_PATH):
    """Write both tables to a fresh file and move it over db_path.

    Returns:
        Tuple of (opening count, book position count).
    """
    book = OpeningBook.from_lines((r["eco"], r["name"], r["pgn"]) for r in rows)
    positions = [
        (epd, entry["eco"] if entry else None, entry["name"] if entry else None)
        for epd, entry in book.items()
    ]

    target_dir = os.path.dirname(os.path.abspath(db_path))
    os.makedirs(target_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(suffix=".db", dir=target_dir)
    os.close(fd)
    try:
        with closing(sqlite3.connect(tmp_path)) as conn:
            conn.executescript(_TABLES)
            conn.executemany(
                "INSERT INTO openings (eco, name, pgn, uci, epd, plies) "
                "VALUES (:eco, :name, :pgn, :uci, :epd, :plies)",
                rows,
            )
            conn.executemany(
                "INSERT INTO book_positions (epd, eco, name) VALUES (?, ?, ?)",
                positions,
            )
            conn.commit()
        os.replace(tmp_path, db_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    return len(rows), len(positions)


def main():
    """CLI entry point for build_openings_db.py."""
    parser = argparse.ArgumentParser(description="Build the opening book database")
    parser.add_argument("--db", default=_DB_PATH, help="Output database path")
    parser.add_argument("--raw-dir", default=_RAW_DIR, help="TSV cache directory")
    parser.add_argument(
        "--refresh", action="store_true", help="Download the TSVs even if cached"
    )
    args = parser.parse_args()

    print("Fetching chess-openings volumes...")
    try:
        paths = fetch_volumes(args.raw_dir, args.refresh)
    except OSError as exc:
        print(f"ERROR: download failed: {exc}", file=sys.stderr)
        sys.exit(1)

    rows = read_volumes(paths)
    print(f"Parsed {len(rows)} named lines.")

    lines, positions = write_database(rows, args.db)
    print(f"Wrote {args.db}: {lines} openings, {positions} book positions.")


if __name__ == "__main__":
    main()
