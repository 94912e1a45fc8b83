"""Runtime settings for the opening blunder pipeline.

Every policy constant (search depths, thresholds, rotation cap, batch
sizes) is a default here and can be overridden from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_PACKAGE_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _PACKAGE_DIR.parent

DEFAULT_DATA_DIR = _PROJECT_ROOT / "data"
DEFAULT_LICHESS_URL = "https://lichess.org"
DEFAULT_PERF_TYPES = ("blitz", "rapid", "classical")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    return float(value)


def _env_tuple(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if not value:
        return default
    return tuple(part.strip() for part in value.split(",") if part.strip())


@dataclass
class Settings:
    """Resolved configuration for one process."""

    data_dir: Path = DEFAULT_DATA_DIR
    database_path: Path = DEFAULT_DATA_DIR / "blunderbook.db"
    openings_db_path: Path = DEFAULT_DATA_DIR / "openings.db"
    stockfish_path: str | None = None
    lichess_url: str = DEFAULT_LICHESS_URL
    lichess_token: str | None = None

    # Engine
    engine_timeout: float = 10.0
    pre_move_depth: int = 15
    post_move_depth: int = 12
    mate_score: int = 10000

    # Detector
    max_plies: int = 20
    loss_threshold: int = 100
    lost_position_threshold: int = -250

    # Store and pipeline
    rotation_cap: int = 60
    full_batch_size: int = 10
    quick_batch_size: int = 1
    perf_types: tuple[str, ...] = field(default=DEFAULT_PERF_TYPES)


def load_settings() -> Settings:
    """Build Settings from environment variables.

    Returns:
        Settings with defaults for anything not set in the environment.
    """
    data_dir = Path(os.getenv("BLUNDERBOOK_DATA_DIR", str(DEFAULT_DATA_DIR)))
    return Settings(
        data_dir=data_dir,
        database_path=Path(
            os.getenv("BLUNDERBOOK_DB", str(data_dir / "blunderbook.db"))
        ),
        openings_db_path=Path(
            os.getenv("BLUNDERBOOK_OPENINGS_DB", str(data_dir / "openings.db"))
        ),
        stockfish_path=os.getenv("STOCKFISH_PATH") or None,
        lichess_url=os.getenv("LICHESS_API_URL", DEFAULT_LICHESS_URL),
        lichess_token=os.getenv("LICHESS_TOKEN") or None,
        engine_timeout=_env_float("BLUNDERBOOK_ENGINE_TIMEOUT", 10.0),
        pre_move_depth=_env_int("BLUNDERBOOK_PRE_MOVE_DEPTH", 15),
        post_move_depth=_env_int("BLUNDERBOOK_POST_MOVE_DEPTH", 12),
        mate_score=_env_int("BLUNDERBOOK_MATE_SCORE", 10000),
        max_plies=_env_int("BLUNDERBOOK_MAX_PLIES", 20),
        loss_threshold=_env_int("BLUNDERBOOK_LOSS_THRESHOLD", 100),
        lost_position_threshold=_env_int("BLUNDERBOOK_LOST_THRESHOLD", -250),
        rotation_cap=_env_int("BLUNDERBOOK_ROTATION_CAP", 60),
        full_batch_size=_env_int("BLUNDERBOOK_FULL_BATCH", 10),
        quick_batch_size=_env_int("BLUNDERBOOK_QUICK_BATCH", 1),
        perf_types=_env_tuple("BLUNDERBOOK_PERF_TYPES", DEFAULT_PERF_TYPES),
    )
