"""Periodic indexing, attribution retry, balance validation and cache cleanup jobs."""
import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from stealthpay.config import Settings
from stealthpay.core.use_cases.balance_validator import BalanceValidationWorker
from stealthpay.core.use_cases.cache_invalidation import CacheInvalidator
from stealthpay.core.use_cases.indexer import StealthIndexer

logger = logging.getLogger(__name__)


class StealthWorkerScheduler:
    def __init__(
        self,
        indexer: StealthIndexer,
        validator: BalanceValidationWorker,
        invalidator: CacheInvalidator,
        settings: Settings
    ):
        self.indexer = indexer
        self.validator = validator
        self.invalidator = invalidator
        self.settings = settings
        self.stop_event = asyncio.Event()
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )

    def setup_jobs(self):
        schedule = self.settings.schedule
        logger.info(f"Scheduling workers with the '{self.settings.indexer_speed}' profile: {schedule.model_dump()}")

        self.scheduler.add_job(
            self.index_stealth_events,
            trigger=IntervalTrigger(seconds=schedule.index_seconds),
            id="index_stealth_events",
            name="Index Stealth Program Events",
        )
        self.scheduler.add_job(
            self.reprocess_withdrawals,
            trigger=IntervalTrigger(seconds=schedule.withdrawal_reprocess_seconds),
            id="reprocess_withdrawals",
            name="Re-process Unlinked Withdrawals",
        )
        self.scheduler.add_job(
            self.rescan_attribution,
            trigger=IntervalTrigger(seconds=schedule.rescan_seconds),
            id="rescan_attribution",
            name="Retry Unfinished Attribution Scans",
        )
        self.scheduler.add_job(
            self.validate_balances,
            trigger=IntervalTrigger(seconds=schedule.balance_validation_seconds),
            id="validate_balances",
            name="Validate Balances Against RPC",
        )
        self.scheduler.add_job(
            self.cleanup_caches,
            trigger=IntervalTrigger(seconds=schedule.cache_cleanup_seconds),
            id="cleanup_caches",
            name="Clean Up Old Cache Entries",
        )

    def start(self):
        self.stop_event.clear()
        self.setup_jobs()
        self.scheduler.start()
        logger.info("Stealth workers started")

    def shutdown(self):
        self.stop_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Stealth workers stopped")

    # --- Jobs ---

    async def index_stealth_events(self):
        report = await self.indexer.run_cycle(self.stop_event)
        if report.aborted:
            logger.warning("Indexing cycle aborted; it will resume on the next run")

    async def reprocess_withdrawals(self):
        linked = await self.indexer.reprocess_unlinked_withdrawals()
        if linked:
            logger.info(f"Linked {linked} withdrawals on re-process")

    async def rescan_attribution(self):
        await self.indexer.reprocess_unattributed()

    async def validate_balances(self):
        await self.validator.run(self.stop_event)

    async def cleanup_caches(self):
        await self.invalidator.cleanup_old_cache_entries(self.settings.ledger)
