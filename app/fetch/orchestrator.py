"""
Request path for every upstream resource.

coalesce -> cache check -> quota gate -> upstream call -> TTL -> store
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from app.cache.coalescer import RequestCoalescer
from app.cache.core import CacheEntry, CacheMeta, CacheSource, utc_today
from app.cache.store import TieredStore
from app.cache.ttl_policies import (
    game_ttl_for_payload,
    no_data_reason,
    roster_ttl,
    scoreboard_ttl_for_games,
    should_persist_permanently,
    standings_ttl,
)
from app.errors import BackoffActive, QuotaExhausted, UpstreamError
from app.quota.governor import QuotaGovernor
from app.upstream.provider import SportsDataProvider

logger = logging.getLogger("fetch.orchestrator")

DEFAULT_UPSTREAM_TIMEOUT = 10.0

# Returns True when a game-date index confirms the league has no games that day
GameDateIndex = Callable[[str, str], bool]


# Cache key generators
def scoreboard_key(league: str, date: str) -> str:
    return f"scoreboard:{league}:{date}"


def game_key(game_id: str) -> str:
    return f"game:{game_id}"


def box_score_key(game_id: str) -> str:
    return f"boxscore:{game_id}"


def standings_key(league: str, season: Optional[str]) -> str:
    return f"standings:{league}:{season or 'current'}"


def roster_key(team_id: str) -> str:
    return f"roster:{team_id}"


@dataclass
class ResourceSpec:
    """How one kind of upstream resource is budgeted and cached."""
    kind: str
    bucket: str
    # (value, params, today) -> TTL seconds
    ttl_for: Callable[[Any, Dict[str, Any], str], int]
    persist_for: Callable[[Any], bool] = lambda value: False


def _game_status(value: Any) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    game = value.get("game", value)
    return (game or {}).get("status")


@dataclass
class FetchResult:
    """Data plus how it was served."""
    data: Any
    meta: CacheMeta

    @property
    def is_stale(self) -> bool:
        return self.meta.is_stale


class FetchOrchestrator:
    """
    Composes coalescer, tiered store, quota governor and cache policy.

    - Concurrent requests for one key share a single fetch
    - Permanent artifacts are served without touching the upstream again
    - When the governor refuses a call, the last cached value is served
      flagged as stale; with nothing cached a ThrottledError is raised
    """

    def __init__(
        self,
        provider: SportsDataProvider,
        governor: QuotaGovernor,
        store: TieredStore,
        coalescer: RequestCoalescer,
        upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT,
        game_date_index: Optional[GameDateIndex] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.governor = governor
        self.store = store
        self.coalescer = coalescer
        self._timeout = upstream_timeout
        self._game_date_index = game_date_index
        self._clock = clock

        self.resources: Dict[str, ResourceSpec] = {
            "scoreboard": ResourceSpec("scoreboard", "scoreboard", self._scoreboard_ttl),
            "game": ResourceSpec(
                "game", "game_summary",
                lambda value, params, today: game_ttl_for_payload(value or {}, today),
                lambda value: should_persist_permanently(_game_status(value)),
            ),
            "boxscore": ResourceSpec(
                "boxscore", "game_summary",
                lambda value, params, today: game_ttl_for_payload((value or {}).get("game") or {}, today),
                lambda value: should_persist_permanently(_game_status(value)),
            ),
            "standings": ResourceSpec("standings", "standings", lambda value, params, today: standings_ttl()),
            "roster": ResourceSpec("roster", "reserve", lambda value, params, today: roster_ttl()),
        }

        self._stats = {
            "hits_fresh": 0,
            "hits_permanent": 0,
            "hits_stale": 0,
            "misses": 0,
            "throttled": 0,
            "upstream_errors": 0,
        }

    def _scoreboard_ttl(self, games: Any, params: Dict[str, Any], today: str) -> int:
        league, date = params["league"], params["date"]
        verified = False
        if not games and self._game_date_index is not None:
            verified = self._game_date_index(league, date)
        return scoreboard_ttl_for_games(
            games or [],
            date,
            today=today,
            no_data_reason=no_data_reason(league, date, verified),
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get_scoreboard(self, league: str, date: str) -> FetchResult:
        return await self.fetch(
            "scoreboard",
            scoreboard_key(league, date),
            {"league": league, "date": date},
            lambda: self.provider.fetch_scoreboard(league, date),
        )

    async def get_game(self, game_id: str) -> FetchResult:
        return await self.fetch(
            "game",
            game_key(game_id),
            {"game_id": game_id},
            lambda: self.provider.fetch_game(game_id),
        )

    async def get_box_score(self, game_id: str, sport: str = "basketball") -> FetchResult:
        return await self.fetch(
            "boxscore",
            box_score_key(game_id),
            {"game_id": game_id, "sport": sport},
            lambda: self.provider.fetch_box_score(game_id, sport),
        )

    async def get_standings(self, league: str, season: Optional[str] = None) -> FetchResult:
        return await self.fetch(
            "standings",
            standings_key(league, season),
            {"league": league, "season": season},
            lambda: self.provider.fetch_standings(league, season),
        )

    async def get_roster(self, team_id: str) -> FetchResult:
        return await self.fetch(
            "roster",
            roster_key(team_id),
            {"team_id": team_id},
            lambda: self.provider.fetch_roster(team_id),
        )

    async def fetch(
        self,
        kind: str,
        key: str,
        params: Dict[str, Any],
        upstream: Callable[[], Awaitable[Any]],
    ) -> FetchResult:
        """Fetch any registered resource kind through the full request path."""
        spec = self.resources[kind]
        return await self.coalescer.dedupe(
            key, lambda: self._fetch_and_cache(spec, key, params, upstream)
        )

    async def invalidate(self, key: str) -> bool:
        """Drop the ephemeral copy of key; permanent artifacts stay."""
        return await self.store.delete(key)

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def _fetch_and_cache(
        self,
        spec: ResourceSpec,
        key: str,
        params: Dict[str, Any],
        upstream: Callable[[], Awaitable[Any]],
    ) -> FetchResult:
        now = self._clock()
        today = utc_today(now)

        entry = await self.store.get(key)
        if entry is not None:
            if entry.permanent:
                logger.debug(f"PERMANENT HIT: {key}")
                self._stats["hits_permanent"] += 1
                return self._result(entry.value, CacheSource.PERMANENT, spec, entry.ttl_seconds, entry, now)

            # The policy TTL is recomputed from current state but never extends
            # the TTL the entry was written with
            ttl = min(entry.ttl_seconds, spec.ttl_for(entry.value, params, today))
            if entry.is_fresh(ttl, now):
                logger.debug(f"CACHE HIT (fresh): {key} [age={entry.age_seconds(now):.1f}s]")
                self._stats["hits_fresh"] += 1
                return self._result(entry.value, CacheSource.FRESH, spec, ttl, entry, now)

        decision = self.governor.can_make_request(spec.bucket)
        if not decision.allowed:
            self._stats["throttled"] += 1
            if entry is not None:
                logger.info(
                    f"CACHE HIT (stale, upstream throttled): {key} "
                    f"[age={entry.age_seconds(now):.1f}s, reason={decision.reason}]"
                )
                self._stats["hits_stale"] += 1
                return self._result(entry.value, CacheSource.STALE, spec, entry.ttl_seconds, entry, now)

            logger.warning(f"Request blocked for {key}: {decision.reason}")
            error_cls = BackoffActive if decision.blocked_by == "backoff" else QuotaExhausted
            raise error_cls(decision.reason, decision.retry_after_ms)

        logger.info(f"CACHE MISS: {key}")
        self._stats["misses"] += 1
        # Charged before the call so concurrent fetches for other keys see it
        self.governor.record_request(spec.bucket)

        try:
            value = await asyncio.wait_for(upstream(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            self._stats["upstream_errors"] += 1
            self.governor.record_error(0, is_timeout=True)
            raise UpstreamError(
                f"Upstream timed out after {self._timeout}s for {key}", is_timeout=True
            ) from e
        except UpstreamError as e:
            self._stats["upstream_errors"] += 1
            self.governor.record_error(e.status_code, e.is_timeout)
            raise
        except Exception as e:
            self._stats["upstream_errors"] += 1
            self.governor.record_error(0)
            logger.error(f"Provider {self.provider.name} failed for {key}: {e!r}")
            raise UpstreamError(f"Provider failure for {key}: {e}") from e

        self.governor.record_success()

        ttl = spec.ttl_for(value, params, today)
        persist = spec.persist_for(value)
        await self.store.set(key, value, ttl, persist)
        return self._result(value, CacheSource.UPSTREAM, spec, ttl, None, now)

    def _result(
        self,
        data: Any,
        source: CacheSource,
        spec: ResourceSpec,
        ttl: int,
        entry: Optional[CacheEntry],
        now: float,
    ) -> FetchResult:
        if entry is not None:
            stored_at = entry.stored_at
            age = entry.age_seconds(now)
        else:
            stored_at = now
            age = 0.0
        meta = CacheMeta(
            last_updated=datetime.fromtimestamp(stored_at, timezone.utc).isoformat().replace("+00:00", "Z"),
            cache_source=source.value,
            category=spec.kind,
            ttl_seconds=ttl,
            age_seconds=age,
        )
        return FetchResult(data=data, meta=meta)

    def get_stats(self) -> Dict[str, Any]:
        total_hits = self._stats["hits_fresh"] + self._stats["hits_permanent"] + self._stats["hits_stale"]
        total_requests = total_hits + self._stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0
        return {
            **self._stats,
            "hit_rate_percent": round(hit_rate, 1),
            "coalescer": self.coalescer.get_stats(),
        }
