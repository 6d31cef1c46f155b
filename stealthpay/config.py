"""
Runtime configuration for stealthpay.

Everything is read from the environment once and exposed as pydantic models.
"""
import os
import re
import logging
from functools import lru_cache
from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

APTOS_MAINNET = "APTOS_MAINNET"
APTOS_TESTNET = "APTOS_TESTNET"

NATIVE_APT_ASSET = "0x1::aptos_coin::AptosCoin"
USDC_ASSET = "0x69091fbab5f7d635ee7ac5098cf0c1efbe31d68fec0f2cd565e8d168daf52832"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class ChainConfig(BaseModel):
    id: str
    rpc_url: str
    public_rpc_url: str
    indexer_url: str
    stealth_program_id: Optional[str] = None
    native_asset: str = NATIVE_APT_ASSET
    native_decimals: int = 8

    @field_validator("stealth_program_id")
    @classmethod
    def _check_program_id(cls, v: Optional[str]) -> Optional[str]:
        if v and not _ADDRESS_RE.match(v):
            raise ValueError(f"Invalid stealth program id: {v}")
        return v


class Schedule(BaseModel):
    """Interval in seconds for each periodic job."""
    index_seconds: int
    withdrawal_reprocess_seconds: int
    rescan_seconds: int
    balance_validation_seconds: int
    cache_cleanup_seconds: int


SCHEDULES: Dict[str, Schedule] = {
    "default": Schedule(
        index_seconds=10,
        withdrawal_reprocess_seconds=30,
        rescan_seconds=120,
        balance_validation_seconds=120,
        cache_cleanup_seconds=600,
    ),
    "slow": Schedule(
        index_seconds=120,
        withdrawal_reprocess_seconds=120,
        rescan_seconds=600,
        balance_validation_seconds=600,
        cache_cleanup_seconds=1800,
    ),
}


class LedgerSettings(BaseModel):
    # token units
    adjustment_epsilon: float = 0.00001
    adjustment_ceiling: float = 1.0

    # seconds
    rpc_fresh_window: int = 5 * 60
    rpc_cache_max_age: int = 6 * 3600
    address_cache_window: int = 5 * 60
    full_refresh_interval: int = 10 * 60
    stale_address_age: int = 12 * 3600
    tier_high_window: int = 2 * 3600
    tier_medium_window: int = 12 * 3600
    tier_low_window: int = 24 * 3600
    address_cache_retention: int = 3600
    summary_retention: int = 24 * 3600
    hot_cache_ttl: int = 60

    discrepancy_log_usd: float = 0.01
    max_stale_per_user: int = 500
    max_priority_per_user: int = 100


class Settings(BaseModel):
    chain_id: str = APTOS_MAINNET
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    aptos_api_key: Optional[str] = None
    indexer_speed: str = "default"
    rpc_min_interval_ms: int = 500
    indexer_batch_size: int = 20
    indexer_batch_pause: float = 1.0
    max_retries: int = 5
    workers_enabled: bool = False
    chains: Dict[str, ChainConfig] = Field(default_factory=lambda: _default_chains())
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)

    @property
    def chain(self) -> ChainConfig:
        if self.chain_id not in self.chains:
            raise ValueError(f"Unsupported chain: {self.chain_id}")
        return self.chains[self.chain_id]

    @property
    def schedule(self) -> Schedule:
        return SCHEDULES.get(self.indexer_speed, SCHEDULES["default"])


def _default_chains() -> Dict[str, ChainConfig]:
    return {
        APTOS_MAINNET: ChainConfig(
            id=APTOS_MAINNET,
            rpc_url=os.getenv("APTOS_RPC_MAINNET", "https://fullnode.mainnet.aptoslabs.com/v1"),
            public_rpc_url="https://fullnode.mainnet.aptoslabs.com/v1",
            indexer_url="https://api.mainnet.aptoslabs.com/v1/graphql",
            stealth_program_id=os.getenv("STEALTH_PROGRAM_ID_APTOS_MAINNET") or None,
        ),
        APTOS_TESTNET: ChainConfig(
            id=APTOS_TESTNET,
            rpc_url=os.getenv("APTOS_RPC_TESTNET", "https://fullnode.testnet.aptoslabs.com/v1"),
            public_rpc_url="https://fullnode.testnet.aptoslabs.com/v1",
            indexer_url="https://api.testnet.aptoslabs.com/v1/graphql",
            stealth_program_id=os.getenv("STEALTH_PROGRAM_ID_APTOS_TESTNET") or None,
        ),
    }


def load_settings() -> Settings:
    ledger = LedgerSettings(
        adjustment_epsilon=float(os.getenv("ADJUSTMENT_EPSILON", "0.00001")),
        adjustment_ceiling=float(os.getenv("ADJUSTMENT_CEILING", "1.0")),
    )
    settings = Settings(
        chain_id=os.getenv("CHAIN", APTOS_MAINNET),
        database_url=os.getenv("DATABASE_URL") or None,
        redis_url=os.getenv("REDIS_URL") or None,
        aptos_api_key=os.getenv("APTOS_API_KEY") or None,
        indexer_speed=os.getenv("INDEXER_SPEED", "default"),
        rpc_min_interval_ms=int(os.getenv("RPC_MIN_INTERVAL_MS", "500")),
        workers_enabled=os.getenv("WORKERS_ENABLED", "false").lower() in ("1", "true", "yes"),
        chains=_default_chains(),
        ledger=ledger,
    )
    if settings.indexer_speed not in SCHEDULES:
        logger.warning(f"Unknown INDEXER_SPEED '{settings.indexer_speed}', using default schedule")
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
