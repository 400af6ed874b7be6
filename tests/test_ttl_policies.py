"""
Tests for game-status-aware TTL policies.
"""
import pytest

from app.cache.core import GameStatus, NoDataReason
from app.cache.ttl_policies import (
    box_score_ttl,
    box_score_ttl_for_payload,
    game_date,
    game_ttl_for_payload,
    is_off_season,
    no_data_reason,
    no_data_ttl,
    roster_ttl,
    scoreboard_ttl,
    scoreboard_ttl_for_games,
    should_persist_permanently,
    standings_ttl,
)
from tests.helpers import make_box_score, make_game

TODAY = "2026-01-15"


@pytest.mark.parametrize("has_live,is_today,has_scheduled,all_final,expected", [
    (True, True, True, False, 60),
    (True, False, False, False, 60),
    (False, True, True, False, 300),
    (False, True, False, True, 21_600),
    (False, False, True, False, 86_400),
    (False, False, False, True, 86_400),
])
def test_scoreboard_ttl(has_live, is_today, has_scheduled, all_final, expected):
    assert scoreboard_ttl(has_live, is_today, has_scheduled, all_final) == expected


def test_today_with_live_and_final_games_uses_live_ttl():
    games = [
        make_game("nba_1", "live", "2026-01-15T19:00:00Z"),
        make_game("nba_2", "final", "2026-01-15T17:00:00Z"),
    ]
    assert scoreboard_ttl_for_games(games, TODAY, today=TODAY) == 60


def test_today_all_final_scoreboard():
    games = [make_game("nba_2", "final", "2026-01-15T17:00:00Z")]
    assert scoreboard_ttl_for_games(games, TODAY, today=TODAY) == 21_600


def test_historical_scoreboard():
    games = [make_game("nba_3", "final", "2026-01-10T17:00:00Z")]
    assert scoreboard_ttl_for_games(games, "2026-01-10", today=TODAY) == 86_400


def test_empty_scoreboard_uses_no_data_ttl():
    assert scoreboard_ttl_for_games([], TODAY, today=TODAY) == 21_600
    assert scoreboard_ttl_for_games(
        [], "2026-07-10", today=TODAY, no_data_reason=NoDataReason.OFF_SEASON
    ) == 604_800


@pytest.mark.parametrize("status,same_day,expected", [
    ("live", True, 90),
    ("live", False, 90),
    (GameStatus.FINAL, True, 21_600),
    ("final", False, 604_800),
    ("scheduled", True, 300),
])
def test_box_score_ttl(status, same_day, expected):
    assert box_score_ttl(status, same_day) == expected


def test_final_box_score_from_three_days_ago():
    payload = make_box_score("nba_401584701", "final", "2026-01-12T00:30:00Z")
    assert box_score_ttl_for_payload(payload, today=TODAY) == 604_800
    assert should_persist_permanently(payload["game"]["status"])


def test_game_ttl_same_day_final():
    game = make_game("nba_9", "final", "2026-01-15T01:00:00Z")
    assert game_ttl_for_payload(game, today=TODAY) == 21_600


@pytest.mark.parametrize("reason,expected", [
    (NoDataReason.VERIFIED, 86_400),
    (NoDataReason.OFF_SEASON, 604_800),
    (NoDataReason.UNKNOWN_IN_SEASON, 21_600),
    ("off_season", 604_800),
    ("something-else", 21_600),
])
def test_no_data_ttl(reason, expected):
    assert no_data_ttl(reason) == expected


def test_no_data_reason():
    assert no_data_reason("nba", "2026-07-10") == NoDataReason.OFF_SEASON
    assert no_data_reason("nba", "2026-01-10") == NoDataReason.UNKNOWN_IN_SEASON
    assert no_data_reason("nba", "2026-07-10", verified_empty=True) == NoDataReason.VERIFIED
    # Leagues without a season calendar are never off season
    assert is_off_season("pga", "2026-12-25") is False


def test_static_ttls():
    assert standings_ttl() == 64_800
    assert roster_ttl() == 86_400


@pytest.mark.parametrize("status,expected", [
    ("final", True),
    (GameStatus.FINAL, True),
    ("FINAL", True),
    ("live", False),
    ("scheduled", False),
    (None, False),
    ("postponed", False),
])
def test_should_persist_permanently(status, expected):
    assert should_persist_permanently(status) is expected


@pytest.mark.parametrize("start_time,expected", [
    ("2026-01-14T22:00:00-05:00", "2026-01-15"),
    ("2026-01-15T03:00:00Z", "2026-01-15"),
    ("2026-01-15T01:30:00+02:00", "2026-01-14"),
    ("2026-01-15T19:00:00", "2026-01-15"),
    ("2026-01-15 TBD", "2026-01-15"),
])
def test_game_date_is_utc_calendar_date(start_time, expected):
    assert game_date({"startTime": start_time}) == expected


def test_offset_start_time_crossing_utc_midnight_is_same_day():
    """A 10pm Eastern tip-off on the 14th is the 15th in UTC."""
    game = make_game("nba_10", "final", "2026-01-14T22:00:00-05:00")
    assert game_ttl_for_payload(game, today=TODAY) == 21_600
    assert box_score_ttl_for_payload({"game": game}, today=TODAY) == 21_600
