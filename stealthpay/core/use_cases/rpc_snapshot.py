"""
Per-address snapshots of on-chain holdings and the balance view built from
them.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from stealthpay.config import ChainConfig, Settings
from stealthpay.core.entities.balance import (
    AddressBalanceCache,
    AssetHolding,
    CalculatedBalance,
)
from stealthpay.core.interfaces.chain_reader import IChainReader
from stealthpay.core.interfaces.repository import ILedgerRepository
from stealthpay.core.timing import utcnow
from stealthpay.core.use_cases.balance_format import AddressAmount, assemble_balances, load_assets

logger = logging.getLogger(__name__)


class RpcSnapshotService:
    def __init__(self, repo: ILedgerRepository, reader: IChainReader, settings: Settings):
        self.repo = repo
        self.reader = reader
        self.settings = settings
        self.ledger = settings.ledger

    def _chain_config(self, chain: str) -> ChainConfig:
        return self.settings.chains.get(chain) or self.settings.chain

    def tier_window(self, priority: str) -> int:
        windows = {
            "high": self.ledger.tier_high_window,
            "medium": self.ledger.tier_medium_window,
            "low": self.ledger.tier_low_window,
        }
        return windows.get(priority, self.ledger.tier_medium_window)

    def is_fresh_for_tier(self, cache: AddressBalanceCache, priority: str, now: Optional[datetime] = None) -> bool:
        """True when the snapshot is recent enough to skip an RPC call for this tier."""
        now = now or utcnow()
        age = (now - cache.last_fetched).total_seconds()
        return age < self.tier_window(priority)

    async def validate_address(self, address: str, chain: str) -> AddressBalanceCache:
        """
        Fetches the address holdings from the chain and stores them as the
        new snapshot. Assets present in the previous snapshot but missing
        from the chain answer are kept at zero. Raises ChainReaderError.
        """
        config = self._chain_config(chain)
        holdings = await self.reader.fetch_account_holdings(address)

        amounts: Dict[str, int] = {}
        previous = await self.repo.get_address_cache(address, chain)
        if previous:
            for holding in previous.assets:
                amounts[holding.asset_id] = 0
        for holding in holdings.assets:
            if holding.asset_id == config.native_asset:
                continue
            amounts[holding.asset_id] = holding.amount

        snapshot = AddressBalanceCache(
            address=address,
            chain=chain,
            native_amount=holdings.native_amount,
            assets=[AssetHolding(asset_id=a, amount=v) for a, v in amounts.items()],
            last_fetched=utcnow(),
            last_activity_timestamp=await self.repo.latest_address_activity(address, chain),
        )
        await self.repo.upsert_address_cache(snapshot)
        logger.debug(f"Stored RPC snapshot for {address}: {holdings.native_amount} native, {len(amounts)} assets")
        return snapshot

    async def get_cached_user_balance(self, user_id: str, chain: str) -> Optional[CalculatedBalance]:
        """
        Balance built from the user's stored snapshots younger than
        rpc_cache_max_age. None when no such snapshot exists.
        """
        addresses = await self.repo.list_user_addresses(user_id, chain)
        if not addresses:
            return None

        cutoff = utcnow() - timedelta(seconds=self.ledger.rpc_cache_max_age)
        caches = [c for c in await self.repo.list_address_caches(addresses, chain) if c.last_fetched >= cutoff]
        if not caches:
            return None

        native_asset = self._chain_config(chain).native_asset
        groups: Dict[Tuple[str, str], AddressAmount] = {}
        for cache in caches:
            latest = await self.repo.get_latest_payment_for_address(cache.address, chain)
            rows: List[Tuple[str, int]] = [(native_asset, cache.native_amount)]
            rows += [(h.asset_id, h.amount) for h in cache.assets]
            for asset_id, amount in rows:
                if amount <= 0:
                    continue
                groups[(asset_id, cache.address)] = AddressAmount(
                    asset_id=asset_id,
                    address=cache.address,
                    raw=Decimal(amount),
                    ephemeral_pubkey=latest.ephemeral_pubkey if latest else None,
                    memo=latest.memo if latest else None,
                )

        assets = await load_assets(self.repo, (asset_id for asset_id, _ in groups), chain)
        result = assemble_balances(
            groups.values(),
            assets,
            {c.address for c in caches},
            min_amount=Decimal(str(self.ledger.adjustment_epsilon)),
            record_count=len(caches),
        )
        result.cache_completeness = len(caches) / len(addresses)
        result.last_rpc_check = max(c.last_fetched for c in caches)
        return result
