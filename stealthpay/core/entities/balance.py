"""
Balance entities: asset metadata, cached RPC snapshots, summaries and the
response shapes returned by the combined read path.
"""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel
from typing import List, Optional


class AssetInfo(BaseModel):
    asset_id: str
    chain: str
    name: str
    symbol: str
    decimals: int
    image_url: Optional[str] = None
    price_usd: float = 0.0
    is_native: bool = False
    is_verified: bool = False


class AssetHolding(BaseModel):
    asset_id: str
    amount: int


class AccountHoldings(BaseModel):
    """What the chain reports an account holds right now (raw units)."""
    address: str
    native_amount: int = 0
    assets: List[AssetHolding] = []


class AddressBalanceCache(BaseModel):
    address: str
    chain: str
    native_amount: int = 0
    assets: List[AssetHolding] = []
    last_fetched: datetime
    last_activity_timestamp: int = 0

    def amount_of(self, asset_id: str, native_asset: str) -> int:
        if asset_id == native_asset:
            return self.native_amount
        for holding in self.assets:
            if holding.asset_id == asset_id:
                return holding.amount
        return 0


class UserBalanceSummary(BaseModel):
    user_id: str
    chain: str
    total_balance_usd: float = 0.0
    tokens_count: int = 0
    stealth_address_count: int = 0
    last_full_refresh: datetime
    last_activity_timestamp: int = 0
    invalidated_at: Optional[datetime] = None


class BalanceSource(str, Enum):
    ACTIVITY = "activity_based_realtime"
    HIGH_PRECISION = "high_precision_chronological"
    RPC_CACHE = "rpc_cache_fallback"
    NO_DATA = "no_data"


class AddressBalanceEntry(BaseModel):
    address: str
    amount: float
    ephemeral_pubkey: Optional[str] = None
    memo: Optional[str] = None


class TokenBalance(BaseModel):
    asset_id: str
    name: str
    symbol: str
    decimals: int
    image_url: Optional[str] = None
    price_usd: float = 0.0
    is_native: bool = False
    is_verified: bool = False
    total: float
    usd_value: float
    balances: List[AddressBalanceEntry] = []


class BalanceTotals(BaseModel):
    total_balance_usd: float = 0.0
    tokens_count: int = 0
    stealth_address_count: int = 0


class BalanceComparison(BaseModel):
    activity_total_usd: float
    rpc_total_usd: float
    difference_usd: float
    discrepancy_percent: float
    cache_completeness: float
    last_rpc_check: Optional[datetime] = None


class AccuracyMetrics(BaseModel):
    rpc_total_usd: float = 0.0
    activity_total_usd: float = 0.0
    high_precision_total_usd: float = 0.0
    rpc_activity_diff: float = 0.0
    rpc_precision_diff: float = 0.0
    activity_precision_diff: float = 0.0


class CalculatedBalance(BaseModel):
    """Output of one balance calculator before the read path picks a source."""
    tokens: List[TokenBalance] = []
    summary: BalanceTotals = BalanceTotals()
    record_count: int = 0
    cache_completeness: Optional[float] = None
    last_rpc_check: Optional[datetime] = None


class BalanceResponse(BaseModel):
    user_id: str
    chain: str
    source: BalanceSource
    tokens: List[TokenBalance] = []
    summary: BalanceTotals = BalanceTotals()
    comparison: Optional[BalanceComparison] = None
    accuracy: Optional[AccuracyMetrics] = None
    cache_completeness: Optional[float] = None
    last_rpc_check: Optional[datetime] = None
    generated_at: datetime


class AddressBalanceResponse(BaseModel):
    address: str
    chain: str
    source: str
    native_amount: int = 0
    assets: List[AssetHolding] = []
    last_fetched: Optional[datetime] = None


class CacheStats(BaseModel):
    address_cache_rows: int
    fresh_address_cache_rows: int
    user_summaries: int
    stale_user_summaries: int
