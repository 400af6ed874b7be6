"""
Process-wide service wiring.

build_services() constructs exactly one governor, coalescer, store and
orchestrator; the app keeps the container on app.state and passes it along
instead of relying on module-level singletons.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from app.cache.coalescer import RequestCoalescer
from app.cache.store import TieredStore, min_starters_validator
from app.cache.tiers import CacheTier, FileTier, MemoryTier, RedisTier
from app.fetch.orchestrator import FetchOrchestrator
from app.quota.governor import QuotaConfig, QuotaGovernor
from app.upstream.provider import HttpSportsProvider, SportsDataProvider
from config.settings import Settings

logger = logging.getLogger("services")


@dataclass
class GatewayServices:
    settings: Settings
    governor: QuotaGovernor
    coalescer: RequestCoalescer
    store: TieredStore
    provider: SportsDataProvider
    orchestrator: FetchOrchestrator

    async def start(self) -> None:
        """Connect the ephemeral tier and restore quota state."""
        if isinstance(self.store.ephemeral, RedisTier):
            await self.store.ephemeral.connect()
        if self.settings.quota_state_file:
            self.governor.load_state(self.settings.quota_state_file)

    async def stop(self) -> None:
        """Drain in-flight fetches, persist quota state, close connections."""
        await self.coalescer.close()
        if self.settings.quota_state_file:
            self.governor.save_state(self.settings.quota_state_file)
        if self.store.ephemeral is not None:
            await self.store.ephemeral.close()
        await self.provider.close()


def _build_ephemeral_tier(settings: Settings) -> Optional[CacheTier]:
    if settings.redis_url:
        return RedisTier(settings.redis_url, settings.redis_connect_timeout_seconds)
    if settings.ephemeral_memory_fallback:
        logger.info("No REDIS_URL configured, using in-process memory tier")
        return MemoryTier()
    return None


def build_services(
    settings: Settings,
    provider: Optional[SportsDataProvider] = None,
) -> GatewayServices:
    governor = QuotaGovernor(QuotaConfig.from_settings(settings))
    coalescer = RequestCoalescer(
        window_seconds=settings.dedup_window_seconds,
        cleanup_grace_seconds=settings.dedup_cleanup_grace_seconds,
    )
    store = TieredStore(
        durable=FileTier(settings.storage_directory),
        ephemeral=_build_ephemeral_tier(settings),
        validators={"boxscore": min_starters_validator()},
        permanent_backup_ttl=settings.permanent_backup_ttl_seconds,
        integrity_retry_ttl=settings.integrity_retry_ttl_seconds,
        stale_grace=settings.stale_grace_seconds,
    )
    provider = provider or HttpSportsProvider(
        settings.upstream_base_url,
        timeout=settings.upstream_timeout_seconds,
        user_agent=settings.upstream_user_agent,
    )
    orchestrator = FetchOrchestrator(
        provider=provider,
        governor=governor,
        store=store,
        coalescer=coalescer,
        upstream_timeout=settings.upstream_timeout_seconds,
    )
    return GatewayServices(
        settings=settings,
        governor=governor,
        coalescer=coalescer,
        store=store,
        provider=provider,
        orchestrator=orchestrator,
    )
