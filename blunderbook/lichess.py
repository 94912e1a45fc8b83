"""Lichess games-export client.

Fetches a player's most recent rated games as NDJSON and maps each line
to a GameRecord. Requests carry a bearer token when one is configured,
which raises the Lichess rate limit.
"""

from __future__ import annotations

import json
import logging

import httpx

from blunderbook.config import DEFAULT_LICHESS_URL, DEFAULT_PERF_TYPES
from blunderbook.errors import GameSourceError, HandleNotFound
from blunderbook.models import GameRecord

logger = logging.getLogger(__name__)

_NDJSON = "application/x-ndjson"


def parse_ndjson_games(text: str) -> list[GameRecord]:
    """Parse a games-export NDJSON body.

    Lines that are not valid JSON, or lack a game id, are logged and
    skipped.

    Args:
        text: Response body, one JSON game object per line.

    Returns:
        GameRecords in the order Lichess returned them (newest first).
    """
    games: list[GameRecord] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
            games.append(GameRecord.from_lichess(payload))
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Skipping unparseable game line (%s): %.80s", exc, line)
    return games


class LichessClient:
    """Async client for the Lichess games API.

    Owns its httpx.AsyncClient unless one is injected, in which case the
    caller is responsible for closing it.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_LICHESS_URL,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> LichessClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_recent_games(
        self,
        handle: str,
        max_games: int = 10,
        perf_types: tuple[str, ...] | list[str] = DEFAULT_PERF_TYPES,
    ) -> list[GameRecord]:
        """Fetch the most recent games for a Lichess user.

        Args:
            handle: Lichess username.
            max_games: Number of games to request.
            perf_types: Speeds to include, e.g. ("blitz", "rapid").

        Returns:
            List of GameRecords, newest first.

        Raises:
            HandleNotFound: If Lichess answers 404 for the handle.
            GameSourceError: On any other HTTP or transport failure.
        """
        url = f"{self._base_url}/api/games/user/{handle}"
        params = {
            "max": max_games,
            "pgnInJson": "true",
            "opening": "true",
            "perfType": ",".join(perf_types),
        }
        headers = {"Accept": _NDJSON}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            resp = await self._client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise GameSourceError(f"Lichess request failed: {exc}") from exc

        if resp.status_code == 404:
            raise HandleNotFound(f"Lichess user not found: {handle}")
        if resp.status_code >= 400:
            raise GameSourceError(
                f"Lichess API error: {resp.status_code} {resp.reason_phrase}"
            )

        games = parse_ndjson_games(resp.text)
        logger.info("Fetched %d games for %s", len(games), handle)
        return games
