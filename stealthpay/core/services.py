import logging
from datetime import timedelta
from typing import Optional

from stealthpay.config import Settings
from stealthpay.core.entities.balance import (
    AccuracyMetrics,
    AddressBalanceResponse,
    BalanceComparison,
    BalanceResponse,
    BalanceSource,
    CacheStats,
    CalculatedBalance,
    UserBalanceSummary,
)
from stealthpay.core.interfaces.cache import IHotCache, balance_cache_key
from stealthpay.core.interfaces.repository import ILedgerRepository
from stealthpay.core.timing import utcnow
from stealthpay.core.use_cases.activity_calculator import ActivityBalanceCalculator
from stealthpay.core.use_cases.precision_calculator import HighPrecisionBalanceCalculator
from stealthpay.core.use_cases.rpc_snapshot import RpcSnapshotService
from stealthpay.core.use_cases.stealth_protocol import normalize_address

logger = logging.getLogger(__name__)


def _total(balance: Optional[CalculatedBalance]) -> float:
    return balance.summary.total_balance_usd if balance else 0.0


# --- Business Logic Services ---

class BalanceService:
    """
    Combined balance read: activity replay first, then the chronological
    replay, then stored RPC snapshots, then an explicit empty answer.
    """

    def __init__(
        self,
        repo: ILedgerRepository,
        snapshots: RpcSnapshotService,
        settings: Settings,
        hot_cache: Optional[IHotCache] = None
    ):
        self.repo = repo
        self.snapshots = snapshots
        self.settings = settings
        self.ledger = settings.ledger
        self.hot_cache = hot_cache
        self.activity = ActivityBalanceCalculator(repo)
        self.precision = HighPrecisionBalanceCalculator(repo)

    async def get_balance(self, user_id: str, chain: Optional[str] = None) -> BalanceResponse:
        chain = chain or self.settings.chain_id
        key = balance_cache_key(user_id, chain)

        if self.hot_cache:
            cached = self.hot_cache.get(key)
            if cached:
                try:
                    return BalanceResponse.model_validate(cached)
                except Exception as e:
                    logger.warning(f"Discarding unreadable cached balance for {user_id}: {e}")

        try:
            response = await self._compute_balance(user_id, chain)
        except Exception as e:
            logger.error(f"Balance calculation failed for {user_id} on {chain}: {e}")
            return self._no_data(user_id, chain)

        if self.hot_cache and response.source != BalanceSource.NO_DATA:
            self.hot_cache.set(key, response, ttl_seconds=self.ledger.hot_cache_ttl)
        await self._refresh_summary(user_id, chain, response)
        return response

    async def _calculate(self, name: str, calculation) -> Optional[CalculatedBalance]:
        try:
            return await calculation
        except Exception as e:
            logger.error(f"{name} balance calculation failed: {e}")
            return None

    async def _compute_balance(self, user_id: str, chain: str) -> BalanceResponse:
        activity = await self._calculate("Activity", self.activity.calculate_user_balance(user_id, chain))
        precision = await self._calculate("High precision", self.precision.calculate_user_balance(user_id, chain))
        rpc = await self._calculate("RPC cache", self.snapshots.get_cached_user_balance(user_id, chain))

        if activity is not None:
            source, chosen = BalanceSource.ACTIVITY, activity
        elif precision is not None and precision.summary.total_balance_usd > 0:
            source, chosen = BalanceSource.HIGH_PRECISION, precision
        elif rpc is not None:
            source, chosen = BalanceSource.RPC_CACHE, rpc
        else:
            return self._no_data(user_id, chain)

        comparison = None
        if rpc is not None:
            comparison = self._compare(user_id, chosen, rpc)

        accuracy = AccuracyMetrics(
            rpc_total_usd=_total(rpc),
            activity_total_usd=_total(activity),
            high_precision_total_usd=_total(precision),
            rpc_activity_diff=abs(_total(rpc) - _total(activity)),
            rpc_precision_diff=abs(_total(rpc) - _total(precision)),
            activity_precision_diff=abs(_total(activity) - _total(precision)),
        )

        logger.info(f"Balance for {user_id} from {source.value}: ${chosen.summary.total_balance_usd:.2f}")
        return BalanceResponse(
            user_id=user_id,
            chain=chain,
            source=source,
            tokens=chosen.tokens,
            summary=chosen.summary,
            comparison=comparison,
            accuracy=accuracy,
            cache_completeness=rpc.cache_completeness if rpc else None,
            last_rpc_check=rpc.last_rpc_check if rpc else None,
            generated_at=utcnow(),
        )

    def _compare(self, user_id: str, chosen: CalculatedBalance, rpc: CalculatedBalance) -> BalanceComparison:
        ledger_total = chosen.summary.total_balance_usd
        rpc_total = rpc.summary.total_balance_usd
        difference = ledger_total - rpc_total
        discrepancy = abs(difference) / rpc_total * 100 if rpc_total > 0 else 0.0

        if abs(difference) > self.ledger.discrepancy_log_usd:
            logger.info(
                f"Balance discrepancy for {user_id}: ledger ${ledger_total:.2f} vs RPC ${rpc_total:.2f} "
                f"({discrepancy:.2f}%)"
            )

        return BalanceComparison(
            activity_total_usd=ledger_total,
            rpc_total_usd=rpc_total,
            difference_usd=difference,
            discrepancy_percent=discrepancy,
            cache_completeness=rpc.cache_completeness or 0.0,
            last_rpc_check=rpc.last_rpc_check,
        )

    def _no_data(self, user_id: str, chain: str) -> BalanceResponse:
        return BalanceResponse(user_id=user_id, chain=chain, source=BalanceSource.NO_DATA, generated_at=utcnow())

    async def _refresh_summary(self, user_id: str, chain: str, response: BalanceResponse) -> None:
        """Rewrites the stored summary when it is missing, invalidated, old or behind new activity."""
        if response.source == BalanceSource.NO_DATA:
            return
        try:
            now = utcnow()
            summary = await self.repo.get_user_summary(user_id, chain)
            latest_activity = await self.repo.latest_user_activity(user_id, chain)
            stale = (
                summary is None
                or summary.invalidated_at is not None
                or now - summary.last_full_refresh > timedelta(seconds=self.ledger.full_refresh_interval)
                or latest_activity > summary.last_activity_timestamp
            )
            if not stale:
                return
            await self.repo.upsert_user_summary(
                UserBalanceSummary(
                    user_id=user_id,
                    chain=chain,
                    total_balance_usd=response.summary.total_balance_usd,
                    tokens_count=response.summary.tokens_count,
                    stealth_address_count=response.summary.stealth_address_count,
                    last_full_refresh=now,
                    last_activity_timestamp=latest_activity,
                )
            )
        except Exception as e:
            logger.warning(f"Could not refresh balance summary for {user_id}: {e}")

    async def get_address_balance(self, address: str, chain: Optional[str] = None) -> AddressBalanceResponse:
        """
        Stored snapshot when it is recent and no activity happened after it,
        otherwise a fresh chain read. A failed read falls back to the stored
        snapshot, however old.
        """
        chain = chain or self.settings.chain_id
        address = normalize_address(address)

        cached = None
        try:
            cached = await self.repo.get_address_cache(address, chain)
            latest_activity = await self.repo.latest_address_activity(address, chain)
            if cached:
                age = (utcnow() - cached.last_fetched).total_seconds()
                if age < self.ledger.address_cache_window and cached.last_activity_timestamp >= latest_activity:
                    return self._address_response(cached, "cache")
        except Exception as e:
            logger.warning(f"Address cache lookup failed for {address}: {e}")

        try:
            snapshot = await self.snapshots.validate_address(address, chain)
            return self._address_response(snapshot, "rpc")
        except Exception as e:
            logger.warning(f"RPC balance fetch failed for {address}: {e}")

        if cached:
            return self._address_response(cached, "stale_cache")
        return AddressBalanceResponse(address=address, chain=chain, source=BalanceSource.NO_DATA.value)

    def _address_response(self, cache, source: str) -> AddressBalanceResponse:
        return AddressBalanceResponse(
            address=cache.address,
            chain=cache.chain,
            source=source,
            native_amount=cache.native_amount,
            assets=cache.assets,
            last_fetched=cache.last_fetched,
        )

    async def get_cache_stats(self) -> CacheStats:
        fresh_after = utcnow() - timedelta(seconds=self.ledger.address_cache_window)
        return await self.repo.get_cache_stats(fresh_after)
