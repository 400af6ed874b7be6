"""
TTL configuration and game-status-aware cache policies.

Every function here is pure: the result depends only on the arguments (and
on "today" when the caller does not pass it in).
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Union

from .core import GameStatus, NoDataReason, utc_today


# TTL Configuration (in seconds)
TTL_CONFIG: Dict[str, int] = {
    "live_scoreboard": 60,                         # 1 minute, poll during live games
    "scheduled_scoreboard_today": 5 * 60,          # 5 minutes, watch for status changes
    "final_scoreboard_same_day": 6 * 60 * 60,      # 6 hours, stat corrections possible
    "final_scoreboard_historical": 24 * 60 * 60,   # 24 hours
    "live_box_score": 90,                          # 90 seconds
    "scheduled_box_score": 5 * 60,                 # 5 minutes
    "final_box_score_same_day": 6 * 60 * 60,       # 6 hours
    "final_box_score": 7 * 24 * 60 * 60,           # 7 days, effectively permanent
    "standings": 18 * 60 * 60,                     # 18 hours, changes overnight
    "schedule": 24 * 60 * 60,
    "roster": 24 * 60 * 60,
    "no_games_verified": 24 * 60 * 60,
    "no_games_off_season": 7 * 24 * 60 * 60,
    "no_games_unknown_in_season": 6 * 60 * 60,
}

NO_DATA_TTLS: Dict[NoDataReason, str] = {
    NoDataReason.VERIFIED: "no_games_verified",
    NoDataReason.OFF_SEASON: "no_games_off_season",
    NoDataReason.UNKNOWN_IN_SEASON: "no_games_unknown_in_season",
}

# Months (1-12) in which each league plays, playoffs included.
# Leagues not listed are treated as year-round.
LEAGUE_SEASON_MONTHS: Dict[str, frozenset] = {
    "nba": frozenset({10, 11, 12, 1, 2, 3, 4, 5, 6}),
    "nhl": frozenset({10, 11, 12, 1, 2, 3, 4, 5, 6}),
    "ncaam": frozenset({11, 12, 1, 2, 3, 4}),
    "nfl": frozenset({9, 10, 11, 12, 1, 2}),
    "ncaaf": frozenset({8, 9, 10, 11, 12, 1}),
    "mlb": frozenset({3, 4, 5, 6, 7, 8, 9, 10, 11}),
}

TERMINAL_STATUSES = frozenset({GameStatus.FINAL})


def scoreboard_ttl(
    has_live: bool,
    is_today: bool,
    has_scheduled: bool,
    all_final: bool,
) -> int:
    """
    TTL for a scoreboard.

    1. Any live game -> 60s
    2. Today with scheduled games -> 5 min
    3. Today, all final -> 6 hours
    4. Any other date -> 24 hours
    """
    if has_live:
        return TTL_CONFIG["live_scoreboard"]
    if is_today:
        if has_scheduled:
            return TTL_CONFIG["scheduled_scoreboard_today"]
        # all_final, or a mix with no scheduled games left
        return TTL_CONFIG["final_scoreboard_same_day"]
    return TTL_CONFIG["final_scoreboard_historical"]


def scoreboard_ttl_for_games(
    games: Iterable[Dict[str, Any]],
    request_date: str,
    today: Optional[str] = None,
    no_data_reason: NoDataReason = NoDataReason.UNKNOWN_IN_SEASON,
) -> int:
    """Derive the scoreboard flags from game dicts and return the TTL."""
    statuses = [GameStatus.parse(g.get("status")) for g in games or []]
    if not statuses:
        return no_data_ttl(no_data_reason)

    today = today or utc_today()
    return scoreboard_ttl(
        has_live=GameStatus.LIVE in statuses,
        is_today=request_date == today,
        has_scheduled=GameStatus.SCHEDULED in statuses,
        all_final=all(s == GameStatus.FINAL for s in statuses),
    )


def box_score_ttl(status: Union[GameStatus, str, None], is_same_day: bool) -> int:
    """
    TTL for a box score.

    Live -> 90s, final same day -> 6 hours, final historical -> 7 days.
    """
    status = GameStatus.parse(status)
    if status == GameStatus.LIVE:
        return TTL_CONFIG["live_box_score"]
    if status == GameStatus.SCHEDULED or status is None:
        return TTL_CONFIG["scheduled_box_score"]
    if is_same_day:
        return TTL_CONFIG["final_box_score_same_day"]
    return TTL_CONFIG["final_box_score"]


def game_ttl(status: Union[GameStatus, str, None], is_same_day: bool) -> int:
    """Game detail follows the box score schedule."""
    return box_score_ttl(status, is_same_day)


def game_date(game: Dict[str, Any]) -> Optional[str]:
    """UTC calendar date (YYYY-MM-DD) of a game's start time."""
    start = (game or {}).get("startTime")
    if not start:
        return None
    try:
        parsed = datetime.fromisoformat(str(start).replace("Z", "+00:00"))
    except ValueError:
        return str(start)[:10]
    if parsed.tzinfo is None:
        return parsed.date().isoformat()
    return parsed.astimezone(timezone.utc).date().isoformat()


def box_score_ttl_for_payload(payload: Dict[str, Any], today: Optional[str] = None) -> int:
    game = (payload or {}).get("game") or {}
    return game_ttl_for_payload(game, today)


def game_ttl_for_payload(game: Dict[str, Any], today: Optional[str] = None) -> int:
    today = today or utc_today()
    return game_ttl(game.get("status"), game_date(game) == today)


def standings_ttl() -> int:
    return TTL_CONFIG["standings"]


def schedule_ttl() -> int:
    return TTL_CONFIG["schedule"]


def roster_ttl() -> int:
    return TTL_CONFIG["roster"]


def no_data_ttl(reason: Union[NoDataReason, str]) -> int:
    """
    TTL for a date confirmed to have no games.

    Avoids re-polling upstream for empty dates. Unrecognised reasons get the
    shortest of the three.
    """
    if not isinstance(reason, NoDataReason):
        try:
            reason = NoDataReason(reason)
        except ValueError:
            return TTL_CONFIG["no_games_unknown_in_season"]
    return TTL_CONFIG[NO_DATA_TTLS[reason]]


def is_off_season(league: str, request_date: str) -> bool:
    months = LEAGUE_SEASON_MONTHS.get(league.lower())
    if months is None:
        return False
    try:
        month = int(request_date[5:7])
    except (TypeError, ValueError):
        return False
    return month not in months


def no_data_reason(
    league: str,
    request_date: str,
    verified_empty: bool = False,
) -> NoDataReason:
    """Classify an empty scoreboard."""
    if verified_empty:
        return NoDataReason.VERIFIED
    if is_off_season(league, request_date):
        return NoDataReason.OFF_SEASON
    return NoDataReason.UNKNOWN_IN_SEASON


def should_persist_permanently(status: Union[GameStatus, str, None]) -> bool:
    """True iff the status is terminal."""
    return GameStatus.parse(status) in TERMINAL_STATUSES
