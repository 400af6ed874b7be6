"""
Two-tier artifact store.

Reads try the optional ephemeral tier first and fall back to the durable
tier. Terminal payloads are written to both, with a completeness check in
front of the durable write so that half-populated upstream responses are
never kept forever.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from app.errors import IntegrityRejection, StorageWriteFailure
from .core import CacheEntry, PermanentArtifact
from .tiers import CacheTier, FileTier

logger = logging.getLogger("cache.store")

DEFAULT_PERMANENT_BACKUP_TTL = 30 * 24 * 60 * 60  # 30 days
DEFAULT_INTEGRITY_RETRY_TTL = 60
DEFAULT_STALE_GRACE = 6 * 60 * 60  # expired entries kept this long for stale serving

# A validator raises IntegrityRejection when a payload looks incomplete
Validator = Callable[[str, Any], None]

_MISSING = object()


def kind_of(key: str) -> str:
    """Artifact kind: the namespace before the first colon."""
    return key.split(":", 1)[0]


def permanent_key(key: str) -> str:
    """
    Ephemeral-tier key for the permanent copy of an artifact.

    "boxscore:nba_401584701" -> "boxscore:permanent:nba_401584701"
    """
    kind, sep, rest = key.partition(":")
    if not sep:
        return f"{key}:permanent"
    return f"{kind}:permanent:{rest}"


def min_starters_validator(
    leagues: Iterable[str] = ("nba", "ncaam"),
    minimum: int = 5,
) -> Validator:
    """
    Reject box scores whose home team lists fewer than `minimum` starters.

    The upstream sometimes marks a game final before the player table is
    populated. The league is the game id prefix ("nba_401584701" -> "nba").
    """
    leagues = {league.lower() for league in leagues}

    def validate(key: str, value: Any) -> None:
        game_id = key.split(":")[-1]
        league = game_id.split("_")[0].lower()
        if league not in leagues:
            return
        home = ((value or {}).get("boxScore") or {}).get("homeTeam") or {}
        starters = home.get("starters")
        if starters is not None and len(starters) < minimum:
            raise IntegrityRejection(
                f"{key}: home team has {len(starters)} starters, expected at least {minimum}"
            )

    return validate


class TieredStore:
    """
    Optional ephemeral tier + mandatory durable tier.

    Never raises for absence or tier failure: reads return None, writes
    return False and log.
    """

    def __init__(
        self,
        durable: CacheTier,
        ephemeral: Optional[CacheTier] = None,
        validators: Optional[Dict[str, Validator]] = None,
        permanent_backup_ttl: int = DEFAULT_PERMANENT_BACKUP_TTL,
        integrity_retry_ttl: int = DEFAULT_INTEGRITY_RETRY_TTL,
        stale_grace: int = DEFAULT_STALE_GRACE,
        clock: Callable[[], float] = time.time,
    ):
        self.durable = durable
        self.ephemeral = ephemeral
        self._validators: Dict[str, Validator] = dict(validators or {})
        self._permanent_backup_ttl = permanent_backup_ttl
        self._integrity_retry_ttl = integrity_retry_ttl
        self._stale_grace = stale_grace
        self._clock = clock
        self._stats = {
            "ephemeral_hits": 0,
            "durable_hits": 0,
            "misses": 0,
            "write_failures": 0,
            "integrity_rejections": 0,
        }

    def register_validator(self, kind: str, validator: Validator) -> None:
        self._validators[kind] = validator

    @property
    def ephemeral_available(self) -> bool:
        return self.ephemeral is not None and self.ephemeral.available

    async def _call(self, tier: CacheTier, op: str, *args: Any, default: Any = None) -> Any:
        try:
            return await getattr(tier, op)(*args)
        except tier.io_errors as e:
            if op == "set":
                self._stats["write_failures"] += 1
                failure = StorageWriteFailure(f"{tier.name} {op} {args[0]}: {e}")
                logger.error(f"Storage write failed: {failure}")
            else:
                logger.warning(f"{tier.name} {op} failed for {args[0]}: {e}")
            return default

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Ephemeral key, then the ephemeral permanent copy, then durable."""
        if self.ephemeral_available:
            data = await self._call(self.ephemeral, "get", key)
            if data is not None:
                self._stats["ephemeral_hits"] += 1
                return CacheEntry.from_dict(key, data)
            data = await self._call(self.ephemeral, "get", permanent_key(key))
            if data is not None:
                self._stats["ephemeral_hits"] += 1
                entry = CacheEntry.from_dict(key, data)
                entry.permanent = True
                return entry

        artifact = await self.get_permanent(key)
        if artifact is not None:
            self._stats["durable_hits"] += 1
            return CacheEntry(
                key=key,
                value=artifact.payload,
                stored_at=artifact.stored_at_epoch,
                ttl_seconds=0,
                permanent=True,
            )

        self._stats["misses"] += 1
        return None

    async def get_permanent(self, key: str) -> Optional[PermanentArtifact]:
        data = await self._call(self.durable, "get", key)
        if data is None:
            return None
        return PermanentArtifact.from_dict(key, data)

    async def exists(self, key: str) -> bool:
        if self.ephemeral_available:
            if await self._call(self.ephemeral, "exists", key, default=False):
                return True
            if await self._call(self.ephemeral, "exists", permanent_key(key), default=False):
                return True
        return bool(await self._call(self.durable, "exists", key, default=False))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: int,
        persist_permanently: bool = False,
    ) -> bool:
        """
        Store a value.

        Returns True when everything requested was stored. A rejected or
        failed permanent write returns False; the caller can simply retry on
        a later fetch.
        """
        now = self._clock()

        if not persist_permanently:
            entry = CacheEntry(key=key, value=value, stored_at=now, ttl_seconds=ttl_seconds)
            return await self._write_ephemeral(key, entry, ttl_seconds + self._stale_grace)

        try:
            self._validate(key, value)
        except IntegrityRejection as e:
            self._stats["integrity_rejections"] += 1
            logger.warning(f"Rejecting incomplete terminal payload, will refetch later: {e}")
            retry_ttl = min(ttl_seconds, self._integrity_retry_ttl)
            entry = CacheEntry(key=key, value=value, stored_at=now, ttl_seconds=retry_ttl)
            await self._write_ephemeral(key, entry, retry_ttl + self._stale_grace)
            return False

        stored_value = await self._write_permanent(key, value, now)
        durable_ok = stored_value is not _MISSING
        if not durable_ok:
            stored_value = value

        entry = CacheEntry(
            key=key,
            value=stored_value,
            stored_at=now,
            ttl_seconds=ttl_seconds,
            permanent=True,
        )
        await self._write_ephemeral(key, entry, ttl_seconds + self._stale_grace)
        await self._write_ephemeral(permanent_key(key), entry, self._permanent_backup_ttl)
        return durable_ok

    def _validate(self, key: str, value: Any) -> None:
        validator = self._validators.get(kind_of(key))
        if validator is not None:
            validator(key, value)

    async def _write_ephemeral(self, key: str, entry: CacheEntry, ttl_seconds: int) -> bool:
        if not self.ephemeral_available:
            return False
        result = await self._call(
            self.ephemeral, "set", key, entry.to_dict(), ttl_seconds, default=_MISSING
        )
        return result is not _MISSING

    async def _write_permanent(self, key: str, value: Any, now: float) -> Any:
        """
        Write the durable artifact unless one already exists.

        Returns the payload now held by the durable tier, or _MISSING if the
        write failed.
        """
        existing = await self.get_permanent(key)
        if existing is not None:
            if existing.payload != value:
                logger.warning(
                    f"Permanent artifact {key} already stored with a different payload; keeping original"
                )
            return existing.payload

        artifact = PermanentArtifact(
            key=key,
            payload=value,
            stored_at=datetime.fromtimestamp(now, timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        result = await self._call(self.durable, "set", key, artifact.to_dict(), None, default=_MISSING)
        if result is _MISSING:
            return _MISSING
        logger.debug(f"Stored permanent artifact: {key}")
        return value

    async def delete(self, key: str) -> bool:
        """Drop the ephemeral copy. Permanent artifacts are never deleted."""
        if not self.ephemeral_available:
            return False
        return bool(await self._call(self.ephemeral, "delete", key, default=False))

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def list_permanent_keys(self) -> List[str]:
        if isinstance(self.durable, FileTier):
            return self.durable.list_keys()
        return []

    def get_stats(self) -> Dict[str, Any]:
        durable_stats = self.durable.stats() if isinstance(self.durable, FileTier) else {}
        return {
            "ephemeral": {
                "tier": self.ephemeral.name if self.ephemeral else None,
                "available": self.ephemeral_available,
            },
            "durable": {"tier": self.durable.name, **durable_stats},
            **self._stats,
        }
