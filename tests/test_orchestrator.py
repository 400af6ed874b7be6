"""
End-to-end tests for the fetch path: coalescer, tiered store, quota governor
and cache policy wired together against a fake provider and a fake clock.
"""
import asyncio

import pytest

from app.cache.coalescer import RequestCoalescer
from app.cache.core import CacheSource
from app.cache.store import TieredStore, min_starters_validator
from app.cache.tiers import FileTier, MemoryTier
from app.errors import BackoffActive, QuotaExhausted, UpstreamError
from app.fetch.orchestrator import FetchOrchestrator, scoreboard_key, standings_key
from app.quota.governor import QuotaConfig, QuotaGovernor
from tests.helpers import make_box_score, make_game

TODAY = "2026-01-15"


def build_orchestrator(provider, clock, directory, upstream_timeout=10.0, **kwargs):
    governor = QuotaGovernor(QuotaConfig(), clock=clock)
    store = TieredStore(
        durable=FileTier(directory),
        ephemeral=MemoryTier(clock=clock),
        validators={"boxscore": min_starters_validator()},
        clock=clock,
    )
    coalescer = RequestCoalescer(cleanup_grace_seconds=0.0, clock=clock)
    return FetchOrchestrator(
        provider,
        governor,
        store,
        coalescer,
        upstream_timeout=upstream_timeout,
        clock=clock,
        **kwargs,
    )


async def settle():
    """Let the coalescer drop settled fetches."""
    await asyncio.sleep(0.01)


@pytest.fixture
def orchestrator(provider, clock, tmp_path):
    return build_orchestrator(provider, clock, tmp_path / "artifacts")


# =============================================================================
# Cache lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_live_scoreboard_refreshes_after_one_minute(orchestrator, provider, clock):
    provider.scoreboards[("nba", TODAY)] = [
        make_game("nba_1", "live", "2026-01-15T19:00:00Z"),
        make_game("nba_2", "final", "2026-01-15T17:00:00Z"),
    ]

    first = await orchestrator.get_scoreboard("nba", TODAY)
    assert first.meta.cache_source == CacheSource.UPSTREAM.value
    assert first.meta.ttl_seconds == 60

    await settle()
    second = await orchestrator.get_scoreboard("nba", TODAY)
    assert second.meta.cache_source == CacheSource.FRESH.value
    assert provider.calls["scoreboard"] == 1

    clock.advance(61)
    await settle()
    third = await orchestrator.get_scoreboard("nba", TODAY)
    assert third.meta.cache_source == CacheSource.UPSTREAM.value
    assert provider.calls["scoreboard"] == 2


@pytest.mark.asyncio
async def test_final_box_score_is_served_permanently_after_restart(provider, clock, tmp_path):
    game_id = "nba_401584701"
    provider.box_scores[game_id] = make_box_score(game_id, "final", "2026-01-12T00:30:00Z")

    first = build_orchestrator(provider, clock, tmp_path / "artifacts")
    result = await first.get_box_score(game_id)
    assert result.meta.cache_source == CacheSource.UPSTREAM.value
    assert result.meta.ttl_seconds == 604_800
    assert first.store.list_permanent_keys() == [f"boxscore:{game_id}"]

    # New process: empty ephemeral tier, same durable directory
    restarted = build_orchestrator(provider, clock, tmp_path / "artifacts")
    clock.advance(30 * 24 * 60 * 60)
    again = await restarted.get_box_score(game_id)
    assert again.meta.cache_source == CacheSource.PERMANENT.value
    assert again.data == provider.box_scores[game_id]
    assert provider.calls["boxscore"] == 1


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_upstream_call(orchestrator, provider):
    game_id = "nba_401584702"
    provider.box_scores[game_id] = make_box_score(game_id, "live", "2026-01-15T17:00:00Z")
    provider.delay = 0.1

    first = asyncio.create_task(orchestrator.get_box_score(game_id))
    await asyncio.sleep(0.05)
    second = asyncio.create_task(orchestrator.get_box_score(game_id))
    results = await asyncio.gather(first, second)

    assert provider.calls["boxscore"] == 1
    assert results[0] is results[1]
    assert results[0].meta.ttl_seconds == 90


@pytest.mark.asyncio
async def test_incomplete_final_box_score_is_refetched(orchestrator, provider, clock):
    game_id = "nba_401584703"
    provider.box_scores[game_id] = make_box_score(game_id, "final", "2026-01-12T00:30:00Z", starters=2)

    await orchestrator.get_box_score(game_id)
    await settle()
    cached = await orchestrator.get_box_score(game_id)
    assert cached.meta.cache_source == CacheSource.FRESH.value
    assert cached.meta.ttl_seconds == 60

    provider.box_scores[game_id] = make_box_score(game_id, "final", "2026-01-12T00:30:00Z")
    clock.advance(61)
    await settle()
    await orchestrator.get_box_score(game_id)
    assert provider.calls["boxscore"] == 2
    assert await orchestrator.store.get_permanent(f"boxscore:{game_id}") is not None


@pytest.mark.asyncio
async def test_invalidate_forces_refetch(orchestrator, provider):
    provider.scoreboards[("nba", TODAY)] = [make_game("nba_1", "scheduled", "2026-01-15T23:00:00Z")]

    await orchestrator.get_scoreboard("nba", TODAY)
    assert await orchestrator.invalidate(scoreboard_key("nba", TODAY))
    await settle()
    await orchestrator.get_scoreboard("nba", TODAY)
    assert provider.calls["scoreboard"] == 2


# =============================================================================
# Empty scoreboards
# =============================================================================

@pytest.mark.asyncio
async def test_off_season_empty_scoreboard_cached_for_a_week(orchestrator, provider):
    provider.scoreboards[("nba", "2026-07-10")] = []
    result = await orchestrator.get_scoreboard("nba", "2026-07-10")
    assert result.data == []
    assert result.meta.ttl_seconds == 604_800


@pytest.mark.asyncio
async def test_verified_empty_scoreboard_uses_game_date_index(provider, clock, tmp_path):
    orchestrator = build_orchestrator(
        provider, clock, tmp_path / "artifacts", game_date_index=lambda league, date: True
    )
    provider.scoreboards[("nba", "2026-01-20")] = []
    result = await orchestrator.get_scoreboard("nba", "2026-01-20")
    assert result.meta.ttl_seconds == 86_400


# =============================================================================
# Throttling
# =============================================================================

@pytest.mark.asyncio
async def test_stale_value_served_while_backoff_active(orchestrator, provider, clock):
    provider.rosters["team_1"] = {"players": [{"id": "p1"}]}
    await orchestrator.get_roster("team_1")

    clock.advance(24 * 60 * 60 + 1)
    orchestrator.governor.record_error(503)
    await settle()

    result = await orchestrator.get_roster("team_1")
    assert result.is_stale
    assert result.meta.cache_source == CacheSource.STALE.value
    assert result.data == {"players": [{"id": "p1"}]}
    assert provider.calls["roster"] == 1


@pytest.mark.asyncio
async def test_backoff_without_cached_value_raises(orchestrator, provider):
    provider.rosters["team_1"] = {"players": []}
    orchestrator.governor.record_error(429)

    with pytest.raises(BackoffActive) as excinfo:
        await orchestrator.get_roster("team_1")
    assert 0 < excinfo.value.retry_after_ms <= 30_000
    assert provider.calls["roster"] == 0


@pytest.mark.asyncio
async def test_exhausted_bucket_raises_quota_exhausted(orchestrator, provider):
    provider.standings[("nba", None)] = {"groups": []}
    provider.standings[("nba", "2025")] = {"groups": []}

    await orchestrator.get_standings("nba")
    with pytest.raises(QuotaExhausted) as excinfo:
        await orchestrator.get_standings("nba", "2025")
    assert excinfo.value.retry_after_ms is None
    assert provider.calls["standings"] == 1
    assert standings_key("nba", None) == "standings:nba:current"


@pytest.mark.asyncio
async def test_quota_is_charged_only_for_upstream_calls(orchestrator, provider):
    provider.scoreboards[("nba", TODAY)] = []

    await orchestrator.get_scoreboard("nba", TODAY)
    await settle()
    await orchestrator.get_scoreboard("nba", TODAY)

    status = orchestrator.governor.get_status()
    assert status["daily"]["used"] == 1
    assert status["buckets"]["scoreboard"]["used"] == 1
    assert status["token_bucket"]["tokens"] == 59


# =============================================================================
# Upstream failures
# =============================================================================

@pytest.mark.asyncio
async def test_upstream_error_propagates_and_starts_backoff(orchestrator, provider):
    provider.error = UpstreamError("service unavailable", status_code=503)

    with pytest.raises(UpstreamError) as excinfo:
        await orchestrator.get_game("nba_1")
    assert excinfo.value.status_code == 503
    assert orchestrator.governor.current_backoff_ms == 30_000

    await settle()
    with pytest.raises(BackoffActive):
        await orchestrator.get_game("nba_1")
    assert provider.calls["game"] == 1


@pytest.mark.asyncio
async def test_upstream_timeout_is_classified(provider, clock, tmp_path):
    orchestrator = build_orchestrator(provider, clock, tmp_path / "artifacts", upstream_timeout=0.05)
    provider.games["nba_1"] = make_game("nba_1", "live", "2026-01-15T17:00:00Z")
    provider.delay = 0.5

    with pytest.raises(UpstreamError) as excinfo:
        await orchestrator.get_game("nba_1")
    assert excinfo.value.is_timeout is True
    assert orchestrator.governor.current_backoff_ms == 15_000
    assert orchestrator.get_stats()["upstream_errors"] == 1


@pytest.mark.asyncio
async def test_unexpected_provider_error_becomes_upstream_error(orchestrator, provider):
    provider.error = KeyError("homeTeam")

    with pytest.raises(UpstreamError) as excinfo:
        await orchestrator.get_game("nba_1")
    assert isinstance(excinfo.value.__cause__, KeyError)
    assert excinfo.value.status_code == 0

    status = orchestrator.governor.get_status()
    assert status["daily"]["used"] == 1
    assert status["backoff"]["consecutive_errors"] == 1
    assert orchestrator.get_stats()["upstream_errors"] == 1
