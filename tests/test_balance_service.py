"""
Tests for the combined balance read path, address balances and the hot
cache in front of them.
"""
from datetime import timedelta
from typing import Any, Dict, Optional

import pytest
from pydantic import BaseModel

from stealthpay.api.main import ServiceContainer
from stealthpay.config import APTOS_TESTNET, USDC_ASSET
from stealthpay.core.entities.balance import AddressBalanceCache, AssetHolding, BalanceSource
from stealthpay.core.errors import ChainReaderError
from stealthpay.core.interfaces.cache import IHotCache, balance_cache_key
from stealthpay.core.timing import utcnow

from factories import PROGRAM_ID, make_bundle, make_wallet, payment_tx

CHAIN = APTOS_TESTNET


class DictHotCache(IHotCache):
    def __init__(self):
        self.store: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self.store.get(key)

    def set(self, key: str, value: Any, ttl_seconds: int = 60):
        self.store[key] = value.model_dump(mode="json") if isinstance(value, BaseModel) else value

    def delete(self, key: str):
        self.store.pop(key, None)


async def _fund(container, repo, reader, amount: int = 2_500_000, version: int = 100, keys=None) -> str:
    if keys is None:
        keys, registered = make_wallet("user-a")
        repo.add_viewing_key(registered)
    bundle = make_bundle(keys)
    reader.add_transaction(PROGRAM_ID, payment_tx(version, bundle, amount, fa_metadata=USDC_ASSET))
    await container.indexer.run_cycle()
    return bundle.stealth_address


async def _snapshot(repo, address: str, usdc: int, age: timedelta = timedelta(0), last_activity: int = 0):
    await repo.upsert_address_cache(
        AddressBalanceCache(
            address=address,
            chain=CHAIN,
            assets=[AssetHolding(asset_id=USDC_ASSET, amount=usdc)],
            last_fetched=utcnow() - age,
            last_activity_timestamp=last_activity,
        )
    )


def _broken(*args, **kwargs):
    raise RuntimeError("calculator offline")


@pytest.mark.asyncio
async def test_unknown_user_gets_no_data(container):
    balance = await container.balances.get_balance("nobody", CHAIN)

    assert balance.source == BalanceSource.NO_DATA
    assert balance.tokens == []
    assert balance.summary.total_balance_usd == 0


@pytest.mark.asyncio
async def test_activity_is_compared_against_rpc_snapshot(container, repo, reader):
    address = await _fund(container, repo, reader)
    await _snapshot(repo, address, 2_400_000)

    balance = await container.balances.get_balance("user-a", CHAIN)

    assert balance.source == BalanceSource.ACTIVITY
    [token] = balance.tokens
    assert token.symbol == "USDC"
    assert token.total == pytest.approx(2.5)
    assert token.balances[0].address == address
    assert balance.comparison.rpc_total_usd == pytest.approx(2.4)
    assert balance.comparison.difference_usd == pytest.approx(0.1)
    assert balance.comparison.discrepancy_percent == pytest.approx(0.1 / 2.4 * 100)
    assert balance.cache_completeness == 1.0
    assert balance.accuracy.high_precision_total_usd == pytest.approx(2.5)


@pytest.mark.asyncio
async def test_high_precision_is_used_when_activity_fails(container, repo, reader, monkeypatch):
    await _fund(container, repo, reader)
    monkeypatch.setattr(container.balances.activity, "calculate_user_balance", _broken)

    balance = await container.balances.get_balance("user-a", CHAIN)

    assert balance.source == BalanceSource.HIGH_PRECISION
    assert balance.summary.total_balance_usd == pytest.approx(2.5)
    assert balance.comparison is None


@pytest.mark.asyncio
async def test_rpc_cache_is_used_when_replays_fail(container, repo, reader, monkeypatch):
    address = await _fund(container, repo, reader)
    await _snapshot(repo, address, 2_400_000)
    monkeypatch.setattr(container.balances.activity, "calculate_user_balance", _broken)
    monkeypatch.setattr(container.balances.precision, "calculate_user_balance", _broken)

    balance = await container.balances.get_balance("user-a", CHAIN)

    assert balance.source == BalanceSource.RPC_CACHE
    assert balance.tokens[0].total == pytest.approx(2.4)
    assert balance.last_rpc_check is not None


@pytest.mark.asyncio
async def test_old_rpc_snapshot_is_not_a_balance_source(container, repo, reader, monkeypatch):
    address = await _fund(container, repo, reader)
    await _snapshot(repo, address, 2_400_000, age=timedelta(hours=7))
    monkeypatch.setattr(container.balances.activity, "calculate_user_balance", _broken)
    monkeypatch.setattr(container.balances.precision, "calculate_user_balance", _broken)

    balance = await container.balances.get_balance("user-a", CHAIN)

    assert balance.source == BalanceSource.NO_DATA


@pytest.mark.asyncio
async def test_summary_is_refreshed_after_a_read(container, repo, reader):
    await _fund(container, repo, reader)

    await container.balances.get_balance("user-a", CHAIN)

    summary = await repo.get_user_summary("user-a", CHAIN)
    assert summary.total_balance_usd == pytest.approx(2.5)
    assert summary.tokens_count == 1
    assert summary.invalidated_at is None


@pytest.mark.asyncio
async def test_hot_cache_serves_reads_until_new_activity(settings, repo, reader):
    hot_cache = DictHotCache()
    container = ServiceContainer(settings, repo, reader, hot_cache)
    keys, registered = make_wallet("user-a")
    repo.add_viewing_key(registered)
    await _fund(container, repo, reader, keys=keys)

    first = await container.balances.get_balance("user-a", CHAIN)
    key = balance_cache_key("user-a", CHAIN)
    assert key in hot_cache.store

    hot_cache.store[key]["summary"]["total_balance_usd"] = 99.0
    cached = await container.balances.get_balance("user-a", CHAIN)
    assert cached.summary.total_balance_usd == 99.0

    await _fund(container, repo, reader, amount=1_000_000, version=101, keys=keys)
    assert key not in hot_cache.store

    fresh = await container.balances.get_balance("user-a", CHAIN)
    assert fresh.summary.total_balance_usd == pytest.approx(3.5)
    assert first.summary.total_balance_usd == pytest.approx(2.5)


@pytest.mark.asyncio
async def test_no_data_is_not_hot_cached(settings, repo, reader):
    hot_cache = DictHotCache()
    container = ServiceContainer(settings, repo, reader, hot_cache)

    await container.balances.get_balance("nobody", CHAIN)

    assert hot_cache.store == {}


@pytest.mark.asyncio
async def test_address_balance_prefers_recent_snapshot(container, repo, reader):
    address = await _fund(container, repo, reader)
    latest = await repo.latest_address_activity(address, CHAIN)
    await _snapshot(repo, address, 2_500_000, last_activity=latest)

    result = await container.balances.get_address_balance(address, CHAIN)

    assert result.source == "cache"
    assert reader.holdings_calls == 0


@pytest.mark.asyncio
async def test_address_balance_reads_chain_when_snapshot_is_behind_activity(container, repo, reader):
    address = await _fund(container, repo, reader)
    await _snapshot(repo, address, 2_400_000, last_activity=0)
    reader.set_holdings(address, assets={USDC_ASSET: 2_500_000})

    result = await container.balances.get_address_balance(address, CHAIN)

    assert result.source == "rpc"
    assert result.assets == [AssetHolding(asset_id=USDC_ASSET, amount=2_500_000)]
    assert (await repo.get_address_cache(address, CHAIN)).last_activity_timestamp > 0


@pytest.mark.asyncio
async def test_address_balance_falls_back_to_stale_snapshot(container, repo, reader):
    address = "0x" + "77" * 32
    await _snapshot(repo, address, 42, age=timedelta(days=2))
    reader.fail_with = ChainReaderError("rpc down")

    result = await container.balances.get_address_balance(address, CHAIN)

    assert result.source == "stale_cache"
    assert result.assets[0].amount == 42


@pytest.mark.asyncio
async def test_address_balance_without_any_data(container, reader):
    reader.fail_with = ChainReaderError("rpc down")

    result = await container.balances.get_address_balance("0x7", CHAIN)

    assert result.source == "no_data"
    assert result.address == "0x" + "0" * 63 + "7"


@pytest.mark.asyncio
async def test_cache_stats_count_fresh_rows(container, repo):
    await _snapshot(repo, "0x" + "01" * 32, 1)
    await _snapshot(repo, "0x" + "02" * 32, 1, age=timedelta(hours=1))

    stats = await container.balances.get_cache_stats()

    assert stats.address_cache_rows == 2
    assert stats.fresh_address_cache_rows == 1
