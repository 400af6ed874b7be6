"""
Core cache data structures.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from enum import Enum


class GameStatus(Enum):
    """Lifecycle state of a game as reported upstream."""
    SCHEDULED = "scheduled"
    LIVE = "live"
    FINAL = "final"

    @classmethod
    def parse(cls, value: Any) -> Optional["GameStatus"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class NoDataReason(Enum):
    """Why a scoreboard came back without games."""
    VERIFIED = "verified"                    # game-date index says no games
    OFF_SEASON = "off_season"                # league is out of season
    UNKNOWN_IN_SEASON = "unknown_in_season"  # in season, nothing scheduled yet


class CacheSource(Enum):
    """Source of cached data."""
    FRESH = "fresh"          # Within TTL
    STALE = "stale"          # Past TTL, served because upstream is throttled
    UPSTREAM = "upstream"    # Fetched from the provider
    PERMANENT = "permanent"  # Terminal artifact, never refetched


@dataclass
class CacheEntry:
    """
    A cached value with the time it was stored.

    Expiry is derived from stored_at + ttl_seconds so that tiers can clean up
    lazily.
    """
    key: str
    value: Any
    stored_at: float
    ttl_seconds: int
    permanent: bool = False

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl_seconds

    def age_seconds(self, now: Optional[float] = None) -> float:
        """Seconds since the value was stored."""
        now = time.time() if now is None else now
        return max(0.0, now - self.stored_at)

    def is_fresh(self, ttl_seconds: Optional[int] = None, now: Optional[float] = None) -> bool:
        """
        Check freshness against a TTL.

        Permanent entries are always fresh. The TTL defaults to the one the
        entry was written with, but callers may pass one recomputed from the
        current domain state.
        """
        if self.permanent:
            return True
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        return self.age_seconds(now) < ttl

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "storedAt": self.stored_at,
            "ttl": self.ttl_seconds,
            "permanent": self.permanent,
        }

    @classmethod
    def from_dict(cls, key: str, data: dict) -> "CacheEntry":
        return cls(
            key=key,
            value=data.get("value"),
            stored_at=float(data.get("storedAt", 0.0)),
            ttl_seconds=int(data.get("ttl", 0)),
            permanent=bool(data.get("permanent", False)),
        )


@dataclass
class PermanentArtifact:
    """A terminal payload kept in the durable tier without expiry."""
    key: str
    payload: Any
    stored_at: str  # ISO-8601

    def to_dict(self) -> dict:
        return {"payload": self.payload, "storedAt": self.stored_at}

    @classmethod
    def from_dict(cls, key: str, data: dict) -> "PermanentArtifact":
        return cls(key=key, payload=data.get("payload"), stored_at=data.get("storedAt", ""))

    @property
    def stored_at_epoch(self) -> float:
        try:
            parsed = datetime.fromisoformat(self.stored_at.replace("Z", "+00:00"))
        except (AttributeError, ValueError):
            return 0.0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, included in API responses.
    """
    last_updated: str  # ISO timestamp
    cache_source: str  # "fresh", "stale", "upstream" or "permanent"
    category: Optional[str] = None
    ttl_seconds: Optional[int] = None
    age_seconds: Optional[float] = None

    @property
    def is_stale(self) -> bool:
        return self.cache_source == CacheSource.STALE.value

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "lastUpdated": self.last_updated,
            "cacheSource": self.cache_source,
            "isStale": self.is_stale,
        }
        # Include debug info if available
        if self.category:
            result["_debug"] = {
                "category": self.category,
                "ttl": self.ttl_seconds,
                "age": round(self.age_seconds, 1) if self.age_seconds else None,
            }
        return result


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_today(now: Optional[float] = None) -> str:
    """Current UTC calendar date as YYYY-MM-DD."""
    moment = datetime.now(timezone.utc) if now is None else datetime.fromtimestamp(now, timezone.utc)
    return moment.strftime("%Y-%m-%d")
