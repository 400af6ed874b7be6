"""
Tiered caching with game-status-aware TTLs, request coalescing, and
permanent storage of final artifacts.
"""
from .core import (
    CacheEntry,
    CacheMeta,
    CacheSource,
    GameStatus,
    NoDataReason,
    PermanentArtifact,
)
from .ttl_policies import (
    TTL_CONFIG,
    box_score_ttl,
    box_score_ttl_for_payload,
    game_ttl,
    game_ttl_for_payload,
    no_data_reason,
    no_data_ttl,
    roster_ttl,
    schedule_ttl,
    scoreboard_ttl,
    scoreboard_ttl_for_games,
    should_persist_permanently,
    standings_ttl,
)
from .coalescer import RequestCoalescer
from .tiers import CacheTier, FileTier, MemoryTier, RedisTier
from .store import TieredStore, min_starters_validator, permanent_key

__all__ = [
    # Core types
    "CacheEntry",
    "CacheMeta",
    "CacheSource",
    "GameStatus",
    "NoDataReason",
    "PermanentArtifact",
    # TTL policies
    "TTL_CONFIG",
    "box_score_ttl",
    "box_score_ttl_for_payload",
    "game_ttl",
    "game_ttl_for_payload",
    "no_data_reason",
    "no_data_ttl",
    "roster_ttl",
    "schedule_ttl",
    "scoreboard_ttl",
    "scoreboard_ttl_for_games",
    "should_persist_permanently",
    "standings_ttl",
    # Coalescing
    "RequestCoalescer",
    # Storage
    "CacheTier",
    "FileTier",
    "MemoryTier",
    "RedisTier",
    "TieredStore",
    "min_starters_validator",
    "permanent_key",
]
