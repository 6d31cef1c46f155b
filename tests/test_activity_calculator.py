"""
Tests for the activity and chronological replays: per-address totals are
payments minus effective withdrawals plus adjustments, and groups that net
to zero or below never reach the token list.
"""
from datetime import datetime, timezone

import pytest

from stealthpay.config import APTOS_TESTNET, NATIVE_APT_ASSET, USDC_ASSET
from stealthpay.core.entities.ledger import BalanceAdjustment, IndexedPayment, IndexedWithdrawal
from stealthpay.core.use_cases.activity_calculator import ActivityBalanceCalculator, net_by_address
from stealthpay.core.use_cases.asset_registry import default_asset_info
from stealthpay.core.use_cases.precision_calculator import HighPrecisionBalanceCalculator

CHAIN = APTOS_TESTNET
USER = "user-a"
A1 = "0x" + "a1" * 32
A2 = "0x" + "a2" * 32
A3 = "0x" + "a3" * 32
NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _payment(version, address, asset_id, amount, timestamp=None, memo=None) -> IndexedPayment:
    return IndexedPayment(
        chain=CHAIN,
        tx_id=str(version),
        version=version,
        event_index=0,
        timestamp=timestamp if timestamp is not None else version,
        stealth_owner=address,
        ephemeral_pubkey=f"eph-{version}",
        asset_id=asset_id,
        amount=amount,
        memo=memo,
        owner_user_id=USER,
    )


def _withdrawal(version, address, asset_id, amount, amount_after_fee=None) -> IndexedWithdrawal:
    return IndexedWithdrawal(
        chain=CHAIN,
        tx_id=str(version),
        version=version,
        timestamp=version,
        stealth_owner=address,
        destination="0x" + "ee" * 32,
        asset_id=asset_id,
        amount=amount,
        amount_after_fee=amount_after_fee,
        user_id=USER,
        is_processed=True,
    )


def _adjustment(address, asset_id, amount) -> BalanceAdjustment:
    return BalanceAdjustment(
        chain=CHAIN,
        stealth_owner=address,
        asset_id=asset_id,
        user_id=USER,
        adjustment_amount=amount,
        created_at=NOW,
        updated_at=NOW,
    )


PAYMENTS = [
    _payment(10, A1, NATIVE_APT_ASSET, 1_000_000),
    _payment(11, A1, USDC_ASSET, 5_000_000),
    _payment(12, A2, NATIVE_APT_ASSET, 300_000),
    _payment(13, A2, USDC_ASSET, 2_000_000),
]
WITHDRAWALS = [
    _withdrawal(14, A1, NATIVE_APT_ASSET, 400_000, amount_after_fee=390_000),
    _withdrawal(15, A2, USDC_ASSET, 2_000_000),
    _withdrawal(16, A3, USDC_ASSET, 1_000),
]
ADJUSTMENTS = [
    _adjustment(A1, USDC_ASSET, 250_000),
    _adjustment(A2, NATIVE_APT_ASSET, -100_000),
]


@pytest.fixture
async def seeded(repo):
    for asset_id in (NATIVE_APT_ASSET, USDC_ASSET):
        await repo.upsert_asset(default_asset_info(asset_id, CHAIN))
    for payment in PAYMENTS:
        await repo.insert_payment(payment)
    for withdrawal in WITHDRAWALS:
        await repo.insert_withdrawal(withdrawal)
    for adjustment in ADJUSTMENTS:
        await repo.upsert_adjustment(adjustment)
    return repo


def test_net_by_address_matches_ledger_sums():
    groups = net_by_address(PAYMENTS, WITHDRAWALS, ADJUSTMENTS)

    expected = {}
    for p in PAYMENTS:
        expected[(p.asset_id, p.stealth_owner)] = expected.get((p.asset_id, p.stealth_owner), 0) + p.amount
    for w in WITHDRAWALS:
        spent = w.amount_after_fee if w.amount_after_fee is not None else w.amount
        expected[(w.asset_id, w.stealth_owner)] = expected.get((w.asset_id, w.stealth_owner), 0) - spent
    for a in ADJUSTMENTS:
        expected[(a.asset_id, a.stealth_owner)] = expected.get((a.asset_id, a.stealth_owner), 0) + a.adjustment_amount

    assert {key: int(group.raw) for key, group in groups.items()} == expected
    assert int(groups[(NATIVE_APT_ASSET, A1)].raw) == 610_000
    assert int(groups[(USDC_ASSET, A1)].raw) == 5_250_000
    assert int(groups[(NATIVE_APT_ASSET, A2)].raw) == 200_000
    assert int(groups[(USDC_ASSET, A2)].raw) == 0
    assert int(groups[(USDC_ASSET, A3)].raw) == -1_000


def test_latest_payment_supplies_key_and_memo():
    groups = net_by_address(
        [
            _payment(20, A1, NATIVE_APT_ASSET, 1, timestamp=500, memo="later"),
            _payment(21, A1, NATIVE_APT_ASSET, 1, timestamp=100, memo="earlier"),
        ],
        [],
        [],
    )

    group = groups[(NATIVE_APT_ASSET, A1)]
    assert group.memo == "later"
    assert group.ephemeral_pubkey == "eph-20"


@pytest.mark.asyncio
async def test_user_balance_drops_non_positive_groups(seeded):
    balance = await ActivityBalanceCalculator(seeded).calculate_user_balance(USER, CHAIN)

    assert balance.record_count == len(PAYMENTS) + len(WITHDRAWALS) + len(ADJUSTMENTS)
    apt, usdc = balance.tokens
    assert apt.asset_id == NATIVE_APT_ASSET
    assert apt.total == pytest.approx(0.0081)
    assert sorted(entry.address for entry in apt.balances) == [A1, A2]

    assert usdc.asset_id == USDC_ASSET
    assert usdc.total == pytest.approx(5.25)
    assert [entry.address for entry in usdc.balances] == [A1]
    assert balance.summary.total_balance_usd == pytest.approx(5.25)
    assert balance.summary.tokens_count == 2


@pytest.mark.asyncio
async def test_address_totals_can_exclude_adjustments(seeded):
    activity = ActivityBalanceCalculator(seeded)

    assert await activity.calculate_address_totals(A1, CHAIN) == {NATIVE_APT_ASSET: 610_000, USDC_ASSET: 5_250_000}
    assert await activity.calculate_address_totals(A1, CHAIN, include_adjustments=False) == {
        NATIVE_APT_ASSET: 610_000,
        USDC_ASSET: 5_000_000,
    }


@pytest.mark.asyncio
async def test_chronological_replay_agrees_with_activity(seeded):
    activity = await ActivityBalanceCalculator(seeded).calculate_user_balance(USER, CHAIN)
    precision = await HighPrecisionBalanceCalculator(seeded).calculate_user_balance(USER, CHAIN)

    assert precision.summary.total_balance_usd == pytest.approx(activity.summary.total_balance_usd)
    assert [t.total for t in precision.tokens] == pytest.approx([t.total for t in activity.tokens])


@pytest.mark.asyncio
async def test_chronological_replay_orders_same_second_by_version(repo):
    await repo.insert_payment(_payment(10, A1, NATIVE_APT_ASSET, 1_000, timestamp=500, memo="second"))
    await repo.insert_payment(_payment(9, A1, NATIVE_APT_ASSET, 1_000, timestamp=500, memo="first"))

    balance = await HighPrecisionBalanceCalculator(repo).calculate_user_balance(USER, CHAIN)

    [entry] = balance.tokens[0].balances
    assert entry.memo == "second"
    assert entry.ephemeral_pubkey == "eph-10"
