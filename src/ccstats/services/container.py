"""Service container with DI wiring."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ccstats.data.db import Database
from ccstats.services.cache import DiskCache, QueryCache
from ccstats.services.pricing import PricingTable
from ccstats.services.statistics_service import UsageStatisticsService
from ccstats.services.sync_service import AutoSyncScheduler, SyncCoordinator

if TYPE_CHECKING:
    from ccstats.config import Config


@dataclass
class ServiceContainer:
    """Holds all application services. Built once at startup, immutable."""

    config: Config
    db: Database
    pricing: PricingTable
    query_cache: QueryCache
    disk_cache: DiskCache | None
    sync_coordinator: SyncCoordinator
    statistics_service: UsageStatisticsService
    scheduler: AutoSyncScheduler

    @classmethod
    async def create(cls, config: Config) -> ServiceContainer:
        """Async factory that wires all dependencies."""
        db = Database(config.db_path)
        await db.__aenter__()

        pricing = PricingTable()
        query_cache = QueryCache(ttl_seconds=config.cache_ttl_seconds)
        disk_cache = (
            DiskCache(config.disk_cache_dir, ttl_seconds=config.disk_cache_ttl_seconds)
            if config.disk_cache_enabled
            else None
        )
        coordinator = SyncCoordinator(
            db,
            config,
            pricing=pricing,
            query_cache=query_cache,
            disk_cache=disk_cache,
        )
        statistics_service = UsageStatisticsService(
            coordinator, config, pricing, query_cache, disk_cache
        )
        scheduler = AutoSyncScheduler(
            coordinator, config.sync_interval, enabled=config.auto_sync_enabled
        )

        return cls(
            config=config,
            db=db,
            pricing=pricing,
            query_cache=query_cache,
            disk_cache=disk_cache,
            sync_coordinator=coordinator,
            statistics_service=statistics_service,
            scheduler=scheduler,
        )

    async def close(self) -> None:
        """Shut down all services."""
        await self.scheduler.stop()
        await self.sync_coordinator.close()
        if self.disk_cache is not None:
            await self.disk_cache.drain()
        await self.db.__aexit__(None, None, None)
