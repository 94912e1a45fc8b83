"""Shared test fixtures.

Usage:
    pytest tests/                  # Fast, scripted engine (no Stockfish)
    pytest tests/ --e2e            # Also run tests that need real Stockfish

Fixtures:
    db              - Fresh SQLite database under tmp_path.
    profiles        - UserProfileStore on that database.
    linked_user     - Profile "alice" linked to Lichess handle "Alice".
    ruy_lopez_book  - OpeningBook holding the Ruy Lopez Morphy Defense line.
    enable_validation - Sets BLUNDERBOOK_VALIDATE=1 for schema validation.
"""

from __future__ import annotations

import os

import pytest

from blunderbook.db import Database
from blunderbook.ledger import ProcessedGameLedger
from blunderbook.openings import OpeningBook
from blunderbook.profiles import UserProfileStore
from blunderbook.puzzles import RotatingPuzzleStore
from tests.fakes import RUY_LOPEZ_LINE, RUY_LOPEZ_NAME


# ---------------------------------------------------------------------------
# CLI option and marker registration
# ---------------------------------------------------------------------------


def pytest_addoption(parser):
    """Register --e2e CLI flag for real Stockfish tests."""
    parser.addoption(
        "--e2e",
        action="store_true",
        default=False,
        help="Run with real Stockfish engine (no fakes).",
    )


def pytest_configure(config):
    """Register the e2e marker."""
    config.addinivalue_line(
        "markers", "e2e: mark test as end-to-end (requires real Stockfish)"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="needs --e2e and a Stockfish binary")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def db(tmp_path):
    return Database(tmp_path / "blunderbook.db")


@pytest.fixture()
def profiles(db):
    return UserProfileStore(db)


@pytest.fixture()
def ledger(db):
    return ProcessedGameLedger(db)


@pytest.fixture()
def store(db):
    return RotatingPuzzleStore(db)


@pytest.fixture()
def linked_user(profiles):
    profiles.create_profile("alice", "Alice")
    profiles.link_lichess_account("alice", "Alice")
    return "alice"


# ---------------------------------------------------------------------------
# Opening book fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def ruy_lopez_book():
    return OpeningBook.from_lines([("C77", RUY_LOPEZ_NAME, RUY_LOPEZ_LINE)])


# ---------------------------------------------------------------------------
# Schema validation fixture
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def enable_validation():
    """Set BLUNDERBOOK_VALIDATE=1 for the test.

    Restores the original env var value after the test.
    """
    original = os.environ.get("BLUNDERBOOK_VALIDATE")
    os.environ["BLUNDERBOOK_VALIDATE"] = "1"
    yield
    if original is None:
        os.environ.pop("BLUNDERBOOK_VALIDATE", None)
    else:
        os.environ["BLUNDERBOOK_VALIDATE"] = original
