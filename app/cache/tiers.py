"""
Storage tiers behind the TieredStore.

Tiers speak in plain JSON-serializable dicts and raise on I/O failure; the
TieredStore catches the errors listed in each tier's ``io_errors`` and logs
them, so nothing escapes past it.
"""
import asyncio
import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger("cache.tiers")


class CacheTier(ABC):
    """
    Abstract key/value tier.

    Implementations must be safe to call concurrently from the event loop.
    """

    name: str = "tier"
    io_errors: Tuple[type, ...] = (OSError,)

    @property
    def available(self) -> bool:
        """False when the tier is configured but cannot be reached."""
        return True

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored dict or None if absent or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, data: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        """Store data; ttl_seconds=None means no expiry."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    async def close(self) -> None:
        pass


class MemoryTier(CacheTier):
    """In-process dict tier with lazy expiry."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: Dict[str, Tuple[Optional[float], Dict[str, Any]]] = {}
        self._clock = clock

    def _live(self, key: str) -> Optional[Dict[str, Any]]:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, data = item
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return data

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        data = self._live(key)
        # Hand out a copy so callers cannot mutate the cached value
        return json.loads(json.dumps(data)) if data is not None else None

    async def set(self, key: str, data: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (expires_at, json.loads(json.dumps(data)))

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._data)


class RedisTier(CacheTier):
    """Redis-backed ephemeral tier. Values are JSON strings with SETEX expiry."""

    name = "redis"
    io_errors = (RedisError, OSError, ValueError)

    def __init__(self, redis_url: str, connect_timeout: float = 3.0):
        self.redis_url = redis_url
        self._connect_timeout = connect_timeout
        self._client: Optional[redis.Redis] = None
        self._available = False

    @property
    def available(self) -> bool:
        return self._available and self._client is not None

    async def connect(self) -> bool:
        """
        Connect and ping. Failure leaves the tier unavailable instead of
        raising, so the gateway runs on the durable tier alone.
        """
        if self._client is not None:
            return self._available
        client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=self._connect_timeout,
            socket_timeout=self._connect_timeout,
        )
        try:
            await asyncio.wait_for(client.ping(), timeout=self._connect_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Redis not available, running without ephemeral cache: {e}")
            await client.aclose()
            self._available = False
            return False

        self._client = client
        self._available = True
        logger.info(f"Redis tier connected: {self.redis_url}")
        return True

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._client.get(key)
        if not raw:
            return None
        return json.loads(raw)

    async def set(self, key: str, data: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        raw = json.dumps(data)
        if ttl_seconds:
            await self._client.setex(key, int(ttl_seconds), raw)
        else:
            await self._client.set(key, raw)

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(key))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._available = False


_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def safe_filename(key: str) -> str:
    """Filesystem-safe transform of a cache key."""
    return _UNSAFE_CHARS.sub("_", key) + ".json"


class FileTier(CacheTier):
    """
    Durable tier: one JSON file per artifact, no expiry.

    Writes go to a temp file and are renamed into place so a crash never
    leaves a half-written artifact behind. Disk I/O runs in a worker thread.
    """

    name = "file"
    io_errors = (OSError, ValueError)

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / safe_filename(key)

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, key: str, data: Dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"key": key, **data}, f, indent=2)
        os.replace(tmp_path, path)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        data = await asyncio.to_thread(self._read, key)
        if data is not None:
            data.pop("key", None)
        return data

    async def set(self, key: str, data: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        # ttl_seconds is ignored: artifacts in this tier never expire
        await asyncio.to_thread(self._write, key, data)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).exists)

    async def delete(self, key: str) -> bool:
        path = self._path(key)

        def _unlink() -> bool:
            if path.exists():
                path.unlink()
                return True
            return False

        return await asyncio.to_thread(_unlink)

    def list_keys(self) -> List[str]:
        """Keys of all stored artifacts."""
        if not self.directory.exists():
            return []
        keys = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    keys.append(json.load(f).get("key") or path.stem)
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable artifact {path.name}: {e}")
        return keys

    def stats(self) -> Dict[str, int]:
        if not self.directory.exists():
            return {"file_count": 0, "total_size_bytes": 0}
        files = list(self.directory.glob("*.json"))
        return {
            "file_count": len(files),
            "total_size_bytes": sum(f.stat().st_size for f in files),
        }
