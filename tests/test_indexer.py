"""
Tests for the stealth event indexer: attribution, idempotency, internal
transfers, withdrawals, retries and cache invalidation.
"""
import asyncio

import pytest

from stealthpay.config import APTOS_TESTNET, NATIVE_APT_ASSET
from stealthpay.core.entities.balance import AddressBalanceCache, UserBalanceSummary
from stealthpay.core.entities.ledger import BalanceAdjustment, IndexedWithdrawal, LinkRef
from stealthpay.core.entities.processing import ProcessingType
from stealthpay.core.errors import ChainReaderError, EventDecodeError
from stealthpay.core.timing import utcnow
from stealthpay.core.use_cases.cache_invalidation import CacheInvalidator
from stealthpay.core.use_cases.indexer import StealthIndexer
from stealthpay.core.use_cases.processing_log import ProcessingLog, payment_process_id, withdrawal_process_id

from factories import PROGRAM_ID, make_bundle, make_wallet, payment_tx, withdraw_tx

CHAIN = APTOS_TESTNET


@pytest.fixture
def wallet_a(repo):
    keys, registered = make_wallet("user-a")
    repo.add_viewing_key(registered)
    return keys


@pytest.fixture
def wallet_b(repo):
    keys, registered = make_wallet("user-b")
    repo.add_viewing_key(registered)
    return keys


@pytest.mark.asyncio
async def test_payment_is_indexed_and_attributed_to_owner(container, repo, reader, wallet_b, wallet_a):
    bundle = make_bundle(wallet_a, note="thanks")
    reader.add_transaction(PROGRAM_ID, payment_tx(100, bundle, 500000))

    report = await container.indexer.run_cycle()

    assert not report.aborted
    assert report.payments_indexed == 1
    [payment] = await repo.list_user_payments("user-a", CHAIN)
    assert payment.amount == 500000
    assert payment.stealth_owner == bundle.stealth_address
    assert payment.note == "thanks"
    assert await repo.list_user_payments("user-b", CHAIN) == []

    balance = await container.balances.get_balance("user-a", CHAIN)
    assert balance.source.value == "activity_based_realtime"
    [token] = balance.tokens
    assert token.asset_id == NATIVE_APT_ASSET
    assert token.total == pytest.approx(0.005)


@pytest.mark.asyncio
async def test_reindexing_the_same_range_changes_nothing(container, repo, reader, wallet_a):
    reader.add_transaction(PROGRAM_ID, payment_tx(100, make_bundle(wallet_a), 500000))

    first = await container.indexer.run_cycle()
    second = await container.indexer.run_cycle()

    assert first.payments_indexed == 1
    assert second.payments_indexed == 0
    assert second.resumed_from == 100
    assert len(repo.payments) == 1


@pytest.mark.asyncio
async def test_idle_cycle_fetches_no_details(container, reader, wallet_a):
    reader.add_transaction(PROGRAM_ID, payment_tx(5, make_bundle(wallet_a), 500000))
    await container.indexer.run_cycle()
    reader.detail_requests.clear()

    for _ in range(3):
        report = await container.indexer.run_cycle()
        assert report.transactions_seen == 0

    assert reader.detail_requests == []


@pytest.mark.asyncio
async def test_unreadable_transaction_is_skipped_not_fatal(container, repo, reader, wallet_a, monkeypatch):
    reader.add_transaction(PROGRAM_ID, payment_tx(1, make_bundle(wallet_a), 1000))
    reader.add_transaction(PROGRAM_ID, payment_tx(2, make_bundle(wallet_a), 2000))
    fetch_detail = reader.fetch_transaction_detail

    async def fetch_or_fail(version):
        if version == 1:
            raise EventDecodeError("Unreadable transaction 1: 'version'")
        return await fetch_detail(version)

    monkeypatch.setattr(reader, "fetch_transaction_detail", fetch_or_fail)

    report = await container.indexer.run_cycle()

    assert not report.aborted
    assert report.events_skipped == 1
    [payment] = await repo.list_user_payments("user-a", CHAIN)
    assert payment.amount == 2000


@pytest.mark.asyncio
async def test_concurrent_indexers_store_each_event_once(settings, repo, reader, wallet_a):
    tx = payment_tx(100, make_bundle(wallet_a), 500000)
    keys = await repo.list_registered_viewing_keys()
    indexers = [StealthIndexer(repo, reader, CacheInvalidator(repo), settings) for _ in range(3)]

    await asyncio.gather(*(indexer.process_transaction(tx, keys) for indexer in indexers))

    assert len(repo.payments) == 1


@pytest.mark.asyncio
async def test_pages_are_followed_until_a_short_page(container, repo, reader, wallet_a):
    for version in range(100, 105):
        reader.add_transaction(PROGRAM_ID, payment_tx(version, make_bundle(wallet_a), 1000))

    report = await container.indexer.run_cycle()

    assert report.transactions_seen == 5
    assert len(await repo.list_user_payments("user-a", CHAIN)) == 5


@pytest.mark.asyncio
async def test_label_links_payment_to_link(container, repo, reader, wallet_a):
    repo.add_link(LinkRef(link_id="coffee-shop", user_id="user-a", label="coffee-shop"))
    reader.add_transaction(PROGRAM_ID, payment_tx(100, make_bundle(wallet_a, label="coffee-shop"), 1000))

    await container.indexer.run_cycle()

    [payment] = await repo.list_user_payments("user-a", CHAIN)
    assert payment.label == "coffee-shop"
    assert payment.link_id == "coffee-shop"


@pytest.mark.asyncio
async def test_withdrawal_is_linked_through_latest_payment(container, repo, reader, wallet_a):
    bundle = make_bundle(wallet_a)
    reader.add_transaction(PROGRAM_ID, payment_tx(100, bundle, 500000))
    reader.add_transaction(PROGRAM_ID, withdraw_tx(101, bundle.stealth_address, 100000))

    report = await container.indexer.run_cycle()

    assert report.withdrawals_indexed == 1
    [withdrawal] = await repo.list_user_withdrawals("user-a", CHAIN)
    assert withdrawal.is_processed
    assert withdrawal.amount_after_fee == 100000
    assert not withdrawal.is_internal_transfer

    totals = await container.balances.activity.calculate_address_totals(bundle.stealth_address, CHAIN)
    assert totals == {NATIVE_APT_ASSET: 400000}


@pytest.mark.asyncio
async def test_payment_from_stealth_address_is_an_internal_transfer(container, repo, reader, wallet_a, wallet_b):
    source = make_bundle(wallet_a)
    target = make_bundle(wallet_b)
    reader.add_transaction(PROGRAM_ID, payment_tx(100, source, 500000))
    reader.add_transaction(PROGRAM_ID, payment_tx(101, target, 200000, sender=source.stealth_address, timestamp=1_700_000_100))

    report = await container.indexer.run_cycle()

    assert report.internal_transfers == 1
    [withdrawal] = await repo.list_withdrawals_for_address(source.stealth_address, CHAIN)
    assert withdrawal.is_internal_transfer
    assert withdrawal.is_processed
    assert withdrawal.user_id == "user-a"
    assert withdrawal.destination_user_id == "user-b"
    assert withdrawal.destination == target.stealth_address

    [incoming] = await repo.list_user_payments("user-b", CHAIN)
    assert incoming.payer_user_id == "user-a"

    balance_a = await container.balances.get_balance("user-a", CHAIN)
    balance_b = await container.balances.get_balance("user-b", CHAIN)
    assert balance_a.tokens[0].total == pytest.approx(0.003)
    assert balance_b.tokens[0].total == pytest.approx(0.002)


@pytest.mark.asyncio
async def test_reader_failure_aborts_the_cycle(container, repo, reader, wallet_a):
    reader.add_transaction(PROGRAM_ID, payment_tx(100, make_bundle(wallet_a), 1000))
    reader.fail_with = ChainReaderError("indexer unavailable")

    report = await container.indexer.run_cycle()

    assert report.aborted
    assert repo.payments == {}

    reader.fail_with = None
    report = await container.indexer.run_cycle()
    assert report.payments_indexed == 1


@pytest.mark.asyncio
async def test_missing_program_id_aborts(settings, repo, reader):
    settings.chains[CHAIN].stealth_program_id = None
    indexer = StealthIndexer(repo, reader, CacheInvalidator(repo), settings)

    report = await indexer.run_cycle()

    assert report.aborted


@pytest.mark.asyncio
async def test_new_payment_invalidates_derived_balances(container, repo, reader, wallet_a):
    bundle = make_bundle(wallet_a)
    now = utcnow()
    await repo.upsert_address_cache(
        AddressBalanceCache(address=bundle.stealth_address, chain=CHAIN, native_amount=1, last_fetched=now)
    )
    await repo.upsert_adjustment(
        BalanceAdjustment(
            chain=CHAIN,
            stealth_owner=bundle.stealth_address,
            asset_id=NATIVE_APT_ASSET,
            user_id="user-a",
            adjustment_amount=5,
            created_at=now,
            updated_at=now,
        )
    )
    await repo.upsert_user_summary(UserBalanceSummary(user_id="user-a", chain=CHAIN, last_full_refresh=now))
    reader.add_transaction(PROGRAM_ID, payment_tx(100, bundle, 1000))

    await container.indexer.run_cycle()

    assert await repo.get_address_cache(bundle.stealth_address, CHAIN) is None
    assert await repo.list_adjustments_for_address(bundle.stealth_address, CHAIN) == []
    summary = await repo.get_user_summary("user-a", CHAIN)
    assert summary.invalidated_at is not None


@pytest.mark.asyncio
async def test_late_registration_is_picked_up_by_rescan(container, repo, reader):
    keys, registered = make_wallet("user-late")
    reader.add_transaction(PROGRAM_ID, payment_tx(100, make_bundle(keys), 1000))

    await container.indexer.run_cycle()
    [payment] = repo.payments.values()
    assert payment.owner_user_id is None

    repo.add_viewing_key(registered)
    resolved = await container.indexer.reprocess_unattributed()

    assert resolved >= 1
    [payment] = await repo.list_user_payments("user-late", CHAIN)
    entry = await repo.get_processing_log(payment_process_id(payment), ProcessingType.PAYMENT_OWNER_SCAN)
    assert entry.is_processed


@pytest.mark.asyncio
async def test_retry_ceiling_stops_processing(repo):
    log = ProcessingLog(repo, max_retries=3)
    scan = ProcessingType.PAYMENT_OWNER_SCAN

    assert await log.should_process("payment:1", scan)
    for _ in range(3):
        await log.mark_attempt("payment:1", scan)

    assert not await log.should_process("payment:1", scan)
    assert await log.get_unprocessed(scan) == []


@pytest.mark.asyncio
async def test_completed_scan_is_not_repeated(repo):
    log = ProcessingLog(repo)
    scan = ProcessingType.WITHDRAWAL_USER_ID_SCAN

    await log.mark_complete("withdrawal:7", scan)

    assert not await log.should_process("withdrawal:7", scan)


@pytest.mark.asyncio
async def test_withdrawals_at_their_ceiling_leave_the_unlinked_queue(repo):
    log = ProcessingLog(repo, max_retries=2)
    stored = []
    for version in (10, 11, 12):
        withdrawal = IndexedWithdrawal(
            chain=CHAIN,
            tx_id=str(version),
            version=version,
            timestamp=version,
            stealth_owner="0x" + "cd" * 32,
            destination="0x" + "ee" * 32,
            asset_id=NATIVE_APT_ASSET,
            amount=1000,
        )
        stored.append(await repo.insert_withdrawal(withdrawal))

    for withdrawal in stored[:2]:
        for _ in range(2):
            await log.mark_attempt(withdrawal_process_id(withdrawal), ProcessingType.WITHDRAWAL_USER_ID_SCAN)

    [pending] = await repo.list_unlinked_withdrawals(CHAIN, limit=2)
    assert pending.tx_id == "12"
