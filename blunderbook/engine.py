"""Asynchronous UCI engine channel for the opening blunder pipeline.

Talks to Stockfish (or any UCI engine) through python-chess's asyncio
``UciProtocol`` over one long-lived engine process.
Provides:
- Handshake (``protocol.initialize()``) with early requests queued behind it
- Serialised ``evaluate(fen, depth)`` requests with a per-request deadline
- A raw ``on_message`` tap for diagnostics
- CLI for quick position evaluation
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import functools
import logging
import shutil
import sys
from pathlib import Path
from typing import Awaitable, Callable

import chess
import chess.engine

from blunderbook.errors import EngineError, EngineTimeout, EngineUnavailable
from blunderbook.models import EvaluationResult

logger = logging.getLogger(__name__)

# Stockfish search paths in priority order
_STOCKFISH_PATHS = [
    "/opt/homebrew/bin/stockfish",
    "/usr/local/bin/stockfish",
    "/usr/bin/stockfish",
    "/usr/games/stockfish",
]

_MATE_SCORE = 10000
_DEFAULT_TIMEOUT = 10.0
_QUIT_TIMEOUT = 2.0


def find_stockfish() -> str:
    """Auto-detect Stockfish binary path.

    Checks known install paths, then falls back to PATH lookup.

    Returns:
        Path to Stockfish binary.

    Raises:
        FileNotFoundError: If Stockfish is not found anywhere.
    """
    for path_str in _STOCKFISH_PATHS:
        if Path(path_str).is_file():
            return path_str

    which_result = shutil.which("stockfish")
    if which_result is not None:
        return which_result

    raise FileNotFoundError(
        "Stockfish not found. Install it or set STOCKFISH_PATH."
    )


def score_to_cp(score: chess.engine.Score | None, mate_score: int = _MATE_SCORE) -> int:
    """Centipawns from the side to move's viewpoint.

    Mate scores saturate to +/- mate_score. ``mate 0`` means the side to
    move is already mated. A search that reported no score counts as 0.
    """
    if score is None:
        return 0
    if score.is_mate():
        return mate_score if score.mate() > 0 else -mate_score
    return score.score()


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class TappedUciProtocol(chess.engine.UciProtocol):
    """UciProtocol that hands every engine output line to listeners first."""

    def __init__(self) -> None:
        super().__init__()
        self.listeners: list[Callable[[str], None]] = []

    def line_received(self, line: str) -> None:
        for callback in list(self.listeners):
            try:
                callback(line)
            except Exception:
                logger.exception("Engine message listener failed on %r", line)
        super().line_received(line)


Connector = Callable[[], Awaitable[tuple[asyncio.SubprocessTransport, TappedUciProtocol]]]


async def popen_engine(path: str) -> tuple[asyncio.SubprocessTransport, TappedUciProtocol]:
    """Start the engine binary and attach a TappedUciProtocol to its pipes.

    Raises:
        EngineUnavailable: If the process cannot be started.
    """
    try:
        transport, protocol = await TappedUciProtocol.popen(path)
    except OSError as exc:
        raise EngineUnavailable(f"Could not start engine {path}: {exc}") from exc
    logger.debug("Started engine %s (pid %s)", path, transport.get_pid())
    return transport, protocol


def _log_handshake_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Engine handshake failed: %s", task.exception())


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class EngineChannel:
    """One long-lived UCI conversation with a single engine process.

    Requests are serialised: concurrent ``evaluate`` callers queue on a
    lock and run one at a time. Independent channels share no state, so
    parallel pipeline runs each own their own channel.

    A timed-out search is cancelled through python-chess, which sends
    ``stop`` and consumes the late ``bestmove`` before the next command
    starts, so stale output never answers a later request.
    """

    def __init__(
        self,
        connect: Connector,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        mate_score: int = _MATE_SCORE,
    ) -> None:
        self._connect = connect
        self._timeout = timeout
        self._mate_score = mate_score
        self._listeners: list[Callable[[str], None]] = []
        self._lock = asyncio.Lock()
        self._transport: asyncio.SubprocessTransport | None = None
        self._protocol: TappedUciProtocol | None = None
        self._handshake: asyncio.Task | None = None
        self._shut_down = False
        self._consecutive_timeouts = 0

    @classmethod
    def for_stockfish(
        cls,
        path: str | None = None,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        mate_score: int = _MATE_SCORE,
    ) -> EngineChannel:
        """Build a channel over a Stockfish subprocess.

        Args:
            path: Explicit path to the binary. If None, auto-detects.

        Raises:
            FileNotFoundError: If Stockfish is not found.
        """
        connect = functools.partial(popen_engine, path or find_stockfish())
        return cls(connect, timeout=timeout, mate_score=mate_score)

    async def __aenter__(self) -> EngineChannel:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def is_ready(self) -> bool:
        return (
            not self._shut_down
            and self._protocol is not None
            and self._protocol.initialized
            and not self._protocol.returncode.done()
        )

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the engine and begin the ``uci`` handshake.

        Returns without waiting for ``uciok``; requests issued before the
        handshake completes wait for it.

        Raises:
            EngineUnavailable: If the channel was shut down or the engine
                cannot be started.
        """
        if self._shut_down:
            raise EngineUnavailable("Engine channel has been shut down")
        if self._protocol is not None:
            return
        self._transport, self._protocol = await self._connect()
        self._protocol.listeners.append(self._dispatch)
        self._handshake = asyncio.create_task(self._protocol.initialize())
        self._handshake.add_done_callback(_log_handshake_failure)

    async def wait_ready(self) -> None:
        """Wait for the handshake, bounded by the channel deadline.

        Raises:
            EngineUnavailable: If the channel is not usable.
            EngineTimeout: If ``uciok`` does not arrive in time.
        """
        self._check_usable()
        try:
            await asyncio.wait_for(asyncio.shield(self._handshake), self._timeout)
        except asyncio.TimeoutError as exc:
            raise EngineTimeout(
                f"Engine did not answer the uci handshake within {self._timeout}s"
            ) from exc
        except asyncio.CancelledError:
            if self._shut_down:
                raise EngineUnavailable("Engine channel was shut down") from None
            raise
        except chess.engine.EngineTerminatedError as exc:
            raise self._unavailable(exc) from exc
        except chess.engine.EngineError as exc:
            raise EngineUnavailable(f"Engine handshake failed: {exc}") from exc

    async def shutdown(self) -> None:
        """Send ``quit``, close the process and reject pending requests.

        In-flight searches fail with EngineUnavailable once the process
        is gone. Safe to call more than once.
        """
        if self._shut_down:
            return
        self._shut_down = True
        self._listeners.clear()

        protocol, transport = self._protocol, self._transport
        if protocol is None:
            return

        if self._handshake is not None and not self._handshake.done():
            self._handshake.cancel()
            with contextlib.suppress(asyncio.CancelledError, chess.engine.EngineError):
                await self._handshake

        if not protocol.returncode.done():
            try:
                await asyncio.wait_for(protocol.quit(), _QUIT_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Engine did not exit after quit; killing pid %s", transport.get_pid())
                transport.kill()
        transport.close()
        logger.debug("Engine channel shut down")

    # ── Messages ────────────────────────────────────────────────────

    def on_message(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Subscribe to every line the engine prints.

        Args:
            callback: Called with each raw output line.

        Returns:
            A function that removes the subscription. Calling it twice is
            harmless.
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(callback)

        return unsubscribe

    def _dispatch(self, line: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(line)
            except Exception:
                logger.exception("Engine message listener failed on %r", line)

    def _check_usable(self) -> None:
        if self._shut_down:
            raise EngineUnavailable("Engine channel has been shut down")
        if self._protocol is None:
            raise EngineUnavailable("Engine channel not initialized; call start() first")
        if self._protocol.returncode.done():
            raise EngineUnavailable("Engine process is not running")

    def _unavailable(self, exc: Exception) -> EngineUnavailable:
        if self._shut_down:
            return EngineUnavailable("Engine channel was shut down")
        logger.warning("Engine process exited: %s", exc)
        return EngineUnavailable(f"Engine process exited: {exc}")

    # ── Evaluation ──────────────────────────────────────────────────

    async def evaluate(self, fen: str, depth: int) -> EvaluationResult:
        """Search a position to a fixed depth.

        Args:
            fen: Position to search.
            depth: Search depth in plies.

        Returns:
            EvaluationResult with the best move (UCI) and the last score
            the engine reported, from the side to move's viewpoint.

        Raises:
            EngineUnavailable: If the channel is not started, has been shut
                down, or the engine exits mid-request.
            EngineTimeout: If the search does not finish within the deadline.
            EngineError: If the engine breaks the protocol for this search.
        """
        self._check_usable()
        async with self._lock:
            self._check_usable()
            await self.wait_ready()
            board = chess.Board(fen)
            limit = chess.engine.Limit(depth=depth)
            try:
                info = await asyncio.wait_for(
                    self._protocol.analyse(board, limit), self._timeout
                )
            except asyncio.TimeoutError as exc:
                self._consecutive_timeouts += 1
                if self._consecutive_timeouts > 1:
                    logger.warning(
                        "%d engine searches in a row timed out; the engine may be stuck",
                        self._consecutive_timeouts,
                    )
                raise EngineTimeout(
                    f"No bestmove within {self._timeout}s (depth {depth}): {fen}"
                ) from exc
            except chess.engine.EngineTerminatedError as exc:
                raise self._unavailable(exc) from exc
            except chess.engine.EngineError as exc:
                raise EngineError(f"Engine protocol error at {fen}: {exc}") from exc

        self._consecutive_timeouts = 0
        pv = info.get("pv")
        score = info.get("score")
        return EvaluationResult(
            best_move=pv[0].uci() if pv else None,
            score_cp=score_to_cp(score.relative if score else None, self._mate_score),
        )


# ---------------------------------------------------------------------------
# CLI interface
# ---------------------------------------------------------------------------


async def _cli_evaluate(fen: str, depth: int, path: str | None, trace: bool) -> None:
    """Evaluate a FEN position and print the result as one line."""
    async with EngineChannel.for_stockfish(path) as channel:
        if trace:
            channel.on_message(lambda line: print(f"  << {line}", file=sys.stderr))
        result = await channel.evaluate(fen, depth)
    print(f"Position: {fen}")
    print(f"Best move: {result.best_move or '(none)'}")
    print(f"Score: {result.score_cp / 100.0:+.2f}")


def main() -> None:
    """CLI entry point for engine.py."""
    parser = argparse.ArgumentParser(
        description="UCI engine channel - evaluate a position"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    eval_parser = subparsers.add_parser("evaluate", help="Evaluate a FEN position")
    eval_parser.add_argument("fen", type=str, help="FEN string to evaluate")
    eval_parser.add_argument("--depth", type=int, default=15, help="Search depth")
    eval_parser.add_argument("--stockfish", type=str, default=None, help="Engine path")
    eval_parser.add_argument(
        "--trace", action="store_true", help="Echo raw engine output to stderr"
    )

    args = parser.parse_args()

    if args.command == "evaluate":
        asyncio.run(_cli_evaluate(args.fen, args.depth, args.stockfish, args.trace))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
