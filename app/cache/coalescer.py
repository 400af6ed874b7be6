"""
Request coalescing to prevent duplicate upstream API calls.

When multiple concurrent requests ask for the same data, only one
upstream call is made and all requesters share the result.
"""
import asyncio
import time
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from dataclasses import dataclass, field

logger = logging.getLogger("cache.coalescer")

DEFAULT_DEDUP_WINDOW_SECONDS = 30.0
DEFAULT_CLEANUP_GRACE_SECONDS = 0.1


@dataclass
class PendingFetch:
    """Tracks an in-progress upstream request."""
    key: str
    task: "asyncio.Task[Any]"
    created_at: float
    waiter_count: int = 1


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one upstream call.

    Pattern:
    - First request for a key starts the fetch as a task
    - Subsequent requests within the dedup window await the same task
    - The entry is dropped shortly after the task settles, so near-simultaneous
      late joiners still share it
    - Callers are shielded: a cancelled caller never cancels the shared fetch

    All bookkeeping happens between awaits on the event loop thread, so the
    check-and-register in dedupe() cannot interleave with another caller.

    Usage:
        coalescer = RequestCoalescer()
        result = await coalescer.dedupe(
            "boxscore:nba_401584701",
            lambda: provider.fetch_box_score("nba_401584701", "basketball"),
        )
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        cleanup_grace_seconds: float = DEFAULT_CLEANUP_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the coalescer.

        Args:
            window_seconds: Max age of a pending fetch that new callers may join
            cleanup_grace_seconds: Delay between settlement and removal
            clock: Monotonic time source
        """
        self._pending: Dict[str, PendingFetch] = {}
        self._cleanup_handles: Set[asyncio.TimerHandle] = set()
        self._window = window_seconds
        self._grace = cleanup_grace_seconds
        self._clock = clock
        self._closed = False

    async def dedupe(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing in-flight fetch or start a new one.

        Args:
            key: Unique identifier (e.g. "scoreboard:nba:2026-01-12")
            fetcher: Coroutine function performing the actual fetch

        Returns:
            The fetched data, shared among all concurrent callers

        Raises:
            Exception: Any error from fetcher is propagated to every caller
        """
        existing = self._live_entry(key)
        if existing is not None:
            existing.waiter_count += 1
            logger.debug(
                f"Coalescing request for {key} (waiters: {existing.waiter_count})"
            )
            return await asyncio.shield(existing.task)

        logger.debug(f"Initiating fetch for {key}")
        task = asyncio.ensure_future(fetcher())
        entry = PendingFetch(key=key, task=task, created_at=self._clock())
        self._pending[key] = entry
        task.add_done_callback(lambda t: self._on_settled(key, t))
        return await asyncio.shield(task)

    def _live_entry(self, key: str) -> Optional[PendingFetch]:
        entry = self._pending.get(key)
        if entry is None:
            return None
        if self._clock() - entry.created_at >= self._window:
            return None
        return entry

    def _on_settled(self, key: str, task: "asyncio.Task[Any]") -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Fetch failed for {key}: {task.exception()!r}")

        if self._closed:
            self._remove(key, task)
            return

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def cleanup() -> None:
            self._cleanup_handles.discard(handle)
            self._remove(key, task)

        handle = loop.call_later(self._grace, cleanup)
        self._cleanup_handles.add(handle)

    def _remove(self, key: str, task: "asyncio.Task[Any]") -> None:
        current = self._pending.get(key)
        # A newer fetch may have replaced this one after the window lapsed
        if current is not None and current.task is task:
            del self._pending[key]

    def is_pending(self, key: str) -> bool:
        """True while a fetch for key is joinable."""
        return self._live_entry(key) is not None

    def get_pending_count(self) -> int:
        """Number of tracked fetches (in flight or within the grace period)."""
        return len(self._pending)

    @property
    def active_requests(self) -> int:
        """Number of fetches still running."""
        return sum(1 for entry in self._pending.values() if not entry.task.done())

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "pending": len(self._pending),
            "active_requests": self.active_requests,
            "active_keys": list(self._pending.keys()),
        }

    def clear(self) -> None:
        """Forget all pending fetches without cancelling them."""
        for handle in list(self._cleanup_handles):
            handle.cancel()
        self._cleanup_handles.clear()
        self._pending.clear()

    async def close(self) -> None:
        """
        Shut down: cancel scheduled cleanups and wait for in-flight fetches.

        In-flight fetches are awaited rather than cancelled so their results
        still reach the cache.
        """
        self._closed = True
        for handle in list(self._cleanup_handles):
            handle.cancel()
        self._cleanup_handles.clear()

        running = [entry.task for entry in self._pending.values() if not entry.task.done()]
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        self._pending.clear()
