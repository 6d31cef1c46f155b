import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from stealthpay.config import LedgerSettings
from stealthpay.core.interfaces.cache import IHotCache, balance_cache_key
from stealthpay.core.interfaces.repository import ILedgerRepository

logger = logging.getLogger(__name__)


class CacheInvalidator:
    """
    Drops every derived balance view that a new payment or withdrawal at an
    address makes stale. Runs inline with indexing and never raises.
    """

    def __init__(self, repo: ILedgerRepository, hot_cache: Optional[IHotCache] = None):
        self.repo = repo
        self.hot_cache = hot_cache

    async def invalidate_for_new_payment(
        self,
        address: str,
        chain: str,
        link_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> None:
        if user_id is None and link_id:
            try:
                link = await self.repo.get_link(link_id)
                user_id = link.user_id if link else None
            except Exception as e:
                logger.warning(f"Link lookup failed during invalidation of {address}: {e}")
        await self._invalidate(address, chain, user_id)

    async def invalidate_for_new_withdrawal(self, address: str, chain: str, user_id: Optional[str] = None) -> None:
        await self._invalidate(address, chain, user_id)

    async def _invalidate(self, address: str, chain: str, user_id: Optional[str]) -> None:
        try:
            await self.repo.delete_address_cache(address, chain)
            # adjustments were fitted to the old activity and no longer apply
            await self.repo.delete_adjustments(address, chain)
            if user_id:
                await self.repo.mark_user_summary_stale(user_id, chain, datetime.now(timezone.utc))
        except Exception as e:
            logger.error(f"Cache invalidation failed for {address} on {chain}: {e}")

        if user_id and self.hot_cache:
            self.hot_cache.delete(balance_cache_key(user_id, chain))

    async def cleanup_old_cache_entries(self, settings: LedgerSettings) -> dict:
        now = datetime.now(timezone.utc)
        try:
            caches = await self.repo.delete_address_caches_older_than(
                now - timedelta(seconds=settings.address_cache_retention)
            )
            summaries = await self.repo.delete_user_summaries_older_than(
                now - timedelta(seconds=settings.summary_retention)
            )
        except Exception as e:
            logger.error(f"Cache cleanup failed: {e}")
            return {"address_caches": 0, "summaries": 0}

        if caches or summaries:
            logger.info(f"Cache cleanup removed {caches} address caches and {summaries} summaries")
        return {"address_caches": caches, "summaries": summaries}
