"""
Test doubles: a controllable clock and a scripted upstream provider.
"""
import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.errors import UpstreamError
from app.upstream.provider import SportsDataProvider


class FakeClock:
    """Callable clock returning epoch seconds that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start.timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(SportsDataProvider):
    """In-memory provider that counts calls and can be told to fail or stall."""

    name = "fake"

    def __init__(self):
        self.calls: Dict[str, int] = defaultdict(int)
        self.scoreboards: Dict[tuple, List[Dict[str, Any]]] = {}
        self.games: Dict[str, Dict[str, Any]] = {}
        self.box_scores: Dict[str, Dict[str, Any]] = {}
        self.standings: Dict[tuple, Dict[str, Any]] = {}
        self.rosters: Dict[str, Dict[str, Any]] = {}
        self.error: Optional[Exception] = None
        self.delay: float = 0.0

    async def _respond(self, kind: str, value: Any) -> Any:
        self.calls[kind] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if value is None:
            raise UpstreamError(f"{kind} not found", status_code=404)
        return value

    async def fetch_scoreboard(self, league, date):
        return await self._respond("scoreboard", self.scoreboards.get((league, date)))

    async def fetch_game(self, game_id):
        return await self._respond("game", self.games.get(game_id))

    async def fetch_box_score(self, game_id, sport):
        return await self._respond("boxscore", self.box_scores.get(game_id))

    async def fetch_standings(self, league, season=None):
        return await self._respond("standings", self.standings.get((league, season)))

    async def fetch_roster(self, team_id):
        return await self._respond("roster", self.rosters.get(team_id))


def make_game(game_id: str, status: str, start_time: str) -> Dict[str, Any]:
    return {
        "id": game_id,
        "startTime": start_time,
        "status": status,
        "homeTeam": {"id": "home", "name": "Home"},
        "awayTeam": {"id": "away", "name": "Away"},
    }


def make_box_score(game_id: str, status: str, start_time: str, starters: int = 5) -> Dict[str, Any]:
    players = [{"id": f"p{i}", "name": f"Player {i}", "points": i * 2} for i in range(starters)]
    return {
        "game": make_game(game_id, status, start_time),
        "boxScore": {
            "homeTeam": {"starters": players, "bench": []},
            "awayTeam": {"starters": players, "bench": []},
        },
        "lastUpdated": start_time,
    }

