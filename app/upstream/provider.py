"""
Upstream sports-data provider contract and its HTTP implementation.

The gateway only depends on SportsDataProvider. Payloads are expected to be
normalized already: games carry "id", "startTime" and "status"
(scheduled/live/final); box scores carry "game" and "boxScore".
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from app.errors import UpstreamError

logger = logging.getLogger("upstream.provider")


class SportsDataProvider(ABC):
    """Abstract upstream provider. Every call is wrapped by the orchestrator."""

    name: str = "provider"

    @abstractmethod
    async def fetch_scoreboard(self, league: str, date: str) -> List[Dict[str, Any]]:
        """Games for a league on a date (YYYY-MM-DD)."""
        pass

    @abstractmethod
    async def fetch_game(self, game_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def fetch_box_score(self, game_id: str, sport: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def fetch_standings(self, league: str, season: Optional[str] = None) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def fetch_roster(self, team_id: str) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        pass


class HttpSportsProvider(SportsDataProvider):
    """
    JSON-over-HTTP provider.

    requests is blocking, so each call runs in a worker thread. HTTP errors
    become UpstreamError carrying the status code; timeouts set is_timeout so
    the quota governor can pick the right backoff class.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        user_agent: str = "BoxScore/1.0",
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "User-Agent": user_agent,
        })

    def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.Timeout as e:
            logger.warning(f"Upstream timeout: {url}")
            raise UpstreamError(f"Timeout fetching {endpoint}", is_timeout=True) from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else 0
            logger.warning(f"Upstream HTTP {status}: {url}")
            raise UpstreamError(f"HTTP {status} fetching {endpoint}", status_code=status) from e
        except requests.RequestException as e:
            logger.error(f"Upstream request failed: {url} - {e}")
            raise UpstreamError(f"Request failed for {endpoint}: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"Invalid JSON from {endpoint}") from e

    async def _fetch(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self._get, endpoint, params)

    async def fetch_scoreboard(self, league: str, date: str) -> List[Dict[str, Any]]:
        data = await self._fetch(f"{league}/scoreboard", {"date": date})
        if isinstance(data, dict):
            return data.get("games", [])
        return data or []

    async def fetch_game(self, game_id: str) -> Dict[str, Any]:
        return await self._fetch(f"games/{game_id}")

    async def fetch_box_score(self, game_id: str, sport: str) -> Dict[str, Any]:
        return await self._fetch(f"games/{game_id}/boxscore", {"sport": sport})

    async def fetch_standings(self, league: str, season: Optional[str] = None) -> Dict[str, Any]:
        params = {"season": season} if season else None
        return await self._fetch(f"{league}/standings", params)

    async def fetch_roster(self, team_id: str) -> Dict[str, Any]:
        return await self._fetch(f"teams/{team_id}/roster")

    async def close(self) -> None:
        self._session.close()
