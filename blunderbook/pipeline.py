"""Pipeline orchestrator: from a linked Lichess handle to stored puzzles.

One run resolves the handle, fetches recent games, drops games already
in the ledger, analyzes the rest one at a time on a single engine
channel, and commits puzzles, ledger rows and the scan stamp in one
transaction.

Usage:
    python -m blunderbook.pipeline init alice
    python -m blunderbook.pipeline link alice DrNykterstein
    python -m blunderbook.pipeline analyze alice --quick
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import inspect
import logging
import sys
from typing import Awaitable, Callable, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from blunderbook.analyzer import GAME_URL, GameAnalyzer
from blunderbook.config import DEFAULT_PERF_TYPES, Settings, load_settings
from blunderbook.db import Database
from blunderbook.engine import EngineChannel
from blunderbook.errors import BlunderbookError, EngineUnavailable, NoLinkedAccount
from blunderbook.ledger import ProcessedGameLedger
from blunderbook.lichess import LichessClient
from blunderbook.models import AnalysisResult, GameError, GameRecord, ProgressUpdate
from blunderbook.openings import OpeningBook
from blunderbook.profiles import UserProfileStore
from blunderbook.puzzles import RotatingPuzzleStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Union[None, Awaitable[None]]]

# Progress milestones (percent)
_FETCHED = 10
_FILTERED = 20
_ANALYSIS_SPAN = 60
_SAVING = 90
_DONE = 100


def resolve_player_color(game: GameRecord, handle: str) -> str:
    """Work out which side the handle played, case-insensitively.

    Falls back to white when the handle matches neither player (renamed
    or anonymous accounts).
    """
    needle = handle.strip().lower()
    if game.white and game.white.lower() == needle:
        return "white"
    if game.black and game.black.lower() == needle:
        return "black"
    logger.warning(
        "%s: %s matches neither %s nor %s; analysing as white",
        game.game_id, handle, game.white, game.black,
    )
    return "white"


class AnalysisPipeline:
    """Coordinates one user's analysis run."""

    def __init__(
        self,
        profiles: UserProfileStore,
        source,
        ledger: ProcessedGameLedger,
        store: RotatingPuzzleStore,
        analyzer: GameAnalyzer,
        db: Database,
        *,
        perf_types: tuple[str, ...] = DEFAULT_PERF_TYPES,
        full_batch_size: int = 10,
        quick_batch_size: int = 1,
    ) -> None:
        self._profiles = profiles
        self._source = source
        self._ledger = ledger
        self._store = store
        self._analyzer = analyzer
        self._db = db
        self._perf_types = perf_types
        self._full_batch_size = full_batch_size
        self._quick_batch_size = quick_batch_size

    async def run_full(
        self, user_id: str, on_progress: ProgressCallback | None = None
    ) -> AnalysisResult:
        return await self.run(user_id, on_progress, self._full_batch_size)

    async def run_quick(
        self, user_id: str, on_progress: ProgressCallback | None = None
    ) -> AnalysisResult:
        """Analyze only the single most recent game."""
        return await self.run(user_id, on_progress, self._quick_batch_size)

    async def run(
        self,
        user_id: str,
        on_progress: ProgressCallback | None = None,
        max_games: int | None = None,
    ) -> AnalysisResult:
        """Analyze a user's recent games and store the resulting puzzles.

        Args:
            user_id: Profile to analyze for.
            on_progress: Called (or awaited) with a ProgressUpdate at each
                stage. The last call has progress 100 and the result.
            max_games: Games to fetch; defaults to the full batch size.

        Returns:
            AnalysisResult. Per-game failures are listed in ``errors``;
            those games are not marked processed and are retried next run.

        Raises:
            NoLinkedAccount: If the user has no Lichess handle.
            HandleNotFound: If Lichess does not know the handle.
            GameSourceError: If the games cannot be fetched.
            EngineUnavailable: If the engine channel dies mid-run.
        """
        max_games = max_games or self._full_batch_size
        result = AnalysisResult()

        handle = self._profiles.get_linked_handle(user_id)
        if not handle:
            raise NoLinkedAccount(
                f"No Lichess account linked for {user_id}. Link one first."
            )
        await self._report(on_progress, "resolving_account", 0)

        games = await self._source.fetch_recent_games(handle, max_games, self._perf_types)
        result.games_fetched = len(games)
        await self._report(on_progress, "fetching_games", _FETCHED)
        if not games:
            logger.info("No games found for %s", handle)
            await self._report(on_progress, "complete", _DONE, result=result)
            return result

        processed = self._ledger.processed_ids(user_id, [g.game_id for g in games])
        new_games = [g for g in games if g.game_id not in processed]
        result.games_skipped = len(games) - len(new_games)
        await self._report(on_progress, "filtering_games", _FILTERED)

        puzzles = []
        analyzed: list[tuple[str, int]] = []
        for index, game in enumerate(new_games, 1):
            color = resolve_player_color(game, handle)
            try:
                found = await self._analyzer.analyze(game, color)
            except EngineUnavailable:
                raise
            except Exception as exc:
                logger.warning("Analysis failed for %s: %s", game.game_id, exc, exc_info=True)
                result.errors.append(
                    GameError(game_id=game.game_id, error=str(exc) or type(exc).__name__)
                )
            else:
                for puzzle in found:
                    puzzle.game_id = game.game_id
                    puzzle.game_url = GAME_URL.format(game_id=game.game_id)
                puzzles.extend(found)
                analyzed.append((game.game_id, len(found)))

            await self._report(
                on_progress,
                "analyzing_games",
                _FILTERED + _ANALYSIS_SPAN * index // len(new_games),
                current_game=index,
                total_games=len(new_games),
            )

        result.games_analyzed = len(analyzed)
        result.puzzles_generated = len(puzzles)

        await self._report(on_progress, "saving_puzzles", _SAVING)
        with self._db.transaction() as conn:
            if puzzles:
                result.rotation_count = self._store.save(user_id, puzzles, conn=conn)
            for game_id, count in analyzed:
                self._ledger.mark_processed(user_id, game_id, count, conn=conn)
            self._profiles.record_scan(user_id, len(analyzed), conn=conn)
        if result.rotation_count is None:
            result.rotation_count = self._store.rotation_count(user_id)

        logger.info(
            "%s: fetched %d, analyzed %d, skipped %d, %d puzzles, %d errors",
            user_id,
            result.games_fetched,
            result.games_analyzed,
            result.games_skipped,
            result.puzzles_generated,
            len(result.errors),
        )
        await self._report(on_progress, "complete", _DONE, result=result)
        return result

    async def _report(
        self,
        on_progress: ProgressCallback | None,
        stage: str,
        progress: int,
        **extra,
    ) -> None:
        if on_progress is None:
            return
        outcome = on_progress(ProgressUpdate(stage=stage, progress=progress, **extra))
        if inspect.isawaitable(outcome):
            await outcome


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_pipeline(
    db: Database,
    engine,
    book,
    source,
    settings: Settings,
) -> AnalysisPipeline:
    """Assemble a pipeline from settings and already-open collaborators."""
    analyzer = GameAnalyzer(
        engine,
        book,
        max_plies=settings.max_plies,
        pre_move_depth=settings.pre_move_depth,
        post_move_depth=settings.post_move_depth,
        loss_threshold=settings.loss_threshold,
        lost_position_threshold=settings.lost_position_threshold,
    )
    return AnalysisPipeline(
        UserProfileStore(db),
        source,
        ProcessedGameLedger(db),
        RotatingPuzzleStore(db, cap=settings.rotation_cap),
        analyzer,
        db,
        perf_types=settings.perf_types,
        full_batch_size=settings.full_batch_size,
        quick_batch_size=settings.quick_batch_size,
    )


async def analyze_user_games(
    user_id: str,
    *,
    settings: Settings | None = None,
    quick: bool = False,
    max_games: int | None = None,
    on_progress: ProgressCallback | None = None,
    trace_engine: bool = False,
) -> AnalysisResult:
    """Run a full or quick analysis with Stockfish and the Lichess API.

    The engine channel and HTTP client live for exactly one run.
    """
    settings = settings or load_settings()
    db = Database(settings.database_path)
    if not UserProfileStore(db).has_linked_account(user_id):
        raise NoLinkedAccount(f"No Lichess account linked for {user_id}. Link one first.")

    book = OpeningBook.from_database(str(settings.openings_db_path))
    async with contextlib.AsyncExitStack() as stack:
        channel = await stack.enter_async_context(
            EngineChannel.for_stockfish(
                settings.stockfish_path,
                timeout=settings.engine_timeout,
                mate_score=settings.mate_score,
            )
        )
        if trace_engine:
            channel.on_message(lambda line: logger.debug("engine: %s", line))
        source = await stack.enter_async_context(
            LichessClient(settings.lichess_url, settings.lichess_token)
        )
        pipeline = build_pipeline(db, channel, book, source, settings)
        if quick:
            return await pipeline.run_quick(user_id, on_progress)
        return await pipeline.run(user_id, on_progress, max_games)


# ---------------------------------------------------------------------------
# CLI interface
# ---------------------------------------------------------------------------


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _render_result(console: Console, result: AnalysisResult) -> None:
    table = Table(title="Analysis complete", show_header=False)
    table.add_column("metric", style="bold")
    table.add_column("value", justify="right")
    table.add_row("Games fetched", str(result.games_fetched))
    table.add_row("Games analyzed", str(result.games_analyzed))
    table.add_row("Already processed", str(result.games_skipped))
    table.add_row("Puzzles generated", str(result.puzzles_generated))
    table.add_row("Rotation", str(result.rotation_count))
    console.print(table)

    for error in result.errors:
        console.print(f"[red]{error.game_id}[/red]: {error.error}")


async def _cli_analyze(
    console: Console,
    user_id: str,
    quick: bool,
    max_games: int | None,
    trace_engine: bool,
) -> AnalysisResult:
    """Run an analysis with a live progress bar."""
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("starting", total=100)

        def on_progress(update: ProgressUpdate) -> None:
            label = update.stage.replace("_", " ")
            if update.current_game is not None:
                label = f"{label} {update.current_game}/{update.total_games}"
            progress.update(task, completed=update.progress, description=label)

        return await analyze_user_games(
            user_id,
            quick=quick,
            max_games=max_games,
            on_progress=on_progress,
            trace_engine=trace_engine,
        )


def main() -> None:
    """CLI entry point for pipeline.py."""
    parser = argparse.ArgumentParser(
        description="Opening blunder trainer - turn your Lichess games into puzzles"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    init_parser = subparsers.add_parser("init", help="Create a user profile")
    init_parser.add_argument("user_id", type=str, help="User id")
    init_parser.add_argument("--name", type=str, default=None, help="Display name")

    link_parser = subparsers.add_parser("link", help="Link a Lichess account")
    link_parser.add_argument("user_id", type=str, help="User id")
    link_parser.add_argument("handle", type=str, help="Lichess username")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze recent games")
    analyze_parser.add_argument("user_id", type=str, help="User id")
    analyze_parser.add_argument(
        "--quick", action="store_true", help="Only the most recent game"
    )
    analyze_parser.add_argument(
        "--max-games", type=int, default=None, help="Games to fetch"
    )
    analyze_parser.add_argument(
        "--trace-engine", action="store_true", help="Log raw engine output"
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.verbose)
    console = Console()
    settings = load_settings()
    profiles = UserProfileStore(Database(settings.database_path))

    try:
        if args.command == "init":
            profile = profiles.create_profile(args.user_id, args.name)
            console.print(f"Profile ready: [bold]{profile['user_id']}[/bold]")
        elif args.command == "link":
            profile = profiles.link_lichess_account(args.user_id, args.handle)
            console.print(
                f"Linked [bold]{profile['user_id']}[/bold] to Lichess "
                f"[bold]{profile['lichess_username']}[/bold]"
            )
        elif args.command == "analyze":
            result = asyncio.run(
                _cli_analyze(
                    console, args.user_id, args.quick, args.max_games, args.trace_engine
                )
            )
            _render_result(console, result)
    except (BlunderbookError, ValueError, FileNotFoundError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
