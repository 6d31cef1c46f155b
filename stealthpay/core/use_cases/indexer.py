"""
Stealth program event indexer.

Each cycle pulls transactions newer than the highest indexed version, turns
their events into payments and withdrawals, attributes them to registered
users and invalidates the affected balance caches. Inserts are keyed by
natural keys, so re-running a cycle over the same range changes nothing.
"""
import asyncio
import logging
from typing import List, Optional

from pydantic import BaseModel

from stealthpay.config import Settings
from stealthpay.core.entities.events import (
    ChainTransactionDetail,
    PaymentEvent,
    WithdrawalEvent,
)
from stealthpay.core.entities.keys import RegisteredViewingKey
from stealthpay.core.entities.ledger import IndexedPayment, IndexedWithdrawal
from stealthpay.core.entities.processing import ProcessingType
from stealthpay.core.errors import EventDecodeError
from stealthpay.core.interfaces.chain_reader import IChainReader
from stealthpay.core.interfaces.repository import ILedgerRepository
from stealthpay.core.timing import is_stopped, sleep_or_stop
from stealthpay.core.use_cases.asset_registry import AssetRegistry
from stealthpay.core.use_cases.attribution import resolve_ownership
from stealthpay.core.use_cases.cache_invalidation import CacheInvalidator
from stealthpay.core.use_cases.event_parser import parse_transaction
from stealthpay.core.use_cases.processing_log import (
    ProcessingLog,
    payment_process_id,
    withdrawal_process_id,
    parse_process_id,
)

logger = logging.getLogger(__name__)


class IndexCycleReport(BaseModel):
    resumed_from: int = 0
    transactions_seen: int = 0
    payments_indexed: int = 0
    withdrawals_indexed: int = 0
    internal_transfers: int = 0
    events_skipped: int = 0
    aborted: bool = False
    skipped_cycle: bool = False


class StealthIndexer:
    def __init__(
        self,
        repo: ILedgerRepository,
        reader: IChainReader,
        invalidator: CacheInvalidator,
        settings: Settings
    ):
        self.repo = repo
        self.reader = reader
        self.invalidator = invalidator
        self.settings = settings
        self.chain = settings.chain
        self.processing_log = ProcessingLog(repo, settings.max_retries)
        self.assets = AssetRegistry(repo, reader)
        self._cycle_lock = asyncio.Lock()

    # --- Cycle ---

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> IndexCycleReport:
        """Single-flight: a cycle that starts while another runs returns at once."""
        if self._cycle_lock.locked():
            logger.info("Indexing cycle already in progress, skipping")
            return IndexCycleReport(skipped_cycle=True)

        async with self._cycle_lock:
            report = IndexCycleReport()
            try:
                await self._run_cycle(report, stop_event)
            except Exception as e:
                logger.error(f"Indexing cycle aborted: {e}")
                report.aborted = True
            return report

    async def _run_cycle(self, report: IndexCycleReport, stop_event: Optional[asyncio.Event]) -> None:
        program_id = self.chain.stealth_program_id
        if not program_id:
            logger.error(f"No stealth program id configured for {self.chain.id}")
            report.aborted = True
            return

        resume = await self.repo.get_max_version(self.chain.id)
        report.resumed_from = resume

        keys = await self.repo.list_registered_viewing_keys()
        batch = self.settings.indexer_batch_size
        offset = 0

        while not is_stopped(stop_event):
            refs = await self.reader.fetch_transactions_since(program_id, resume, batch, offset)
            for ref in refs:
                if is_stopped(stop_event):
                    return
                try:
                    detail = await self.reader.fetch_transaction_detail(ref.version)
                    if detail is None:
                        logger.warning(f"Transaction {ref.version} not found, skipping")
                        continue
                    report.transactions_seen += 1
                    await self.process_transaction(detail, keys, report)
                except EventDecodeError as e:
                    logger.warning(f"Skipping transaction {ref.version}: {e}")
                    report.events_skipped += 1

            offset += batch
            if len(refs) < batch:
                break
            if await sleep_or_stop(self.settings.indexer_batch_pause, stop_event):
                break

        logger.info(
            f"Indexed {report.payments_indexed} payments and {report.withdrawals_indexed} withdrawals "
            f"from {report.transactions_seen} transactions after version {resume}"
        )

    async def process_transaction(
        self,
        tx: ChainTransactionDetail,
        keys: List[RegisteredViewingKey],
        report: Optional[IndexCycleReport] = None
    ) -> None:
        report = report or IndexCycleReport()
        for event in parse_transaction(tx, self.chain.native_asset):
            if not isinstance(event, (PaymentEvent, WithdrawalEvent)):
                continue

            asset = await self.assets.get_or_create(event.asset_id, self.chain.id)
            if asset is None:
                logger.warning(f"No asset metadata for {event.asset_id}, skipping {event.tx_id}#{event.event_index}")
                report.events_skipped += 1
                continue

            if isinstance(event, PaymentEvent):
                await self._index_payment(event, keys, report)
            else:
                await self._index_withdrawal(event, keys, report)

    # --- Payments ---

    async def _index_payment(self, event: PaymentEvent, keys: List[RegisteredViewingKey], report: IndexCycleReport) -> None:
        payment = IndexedPayment(
            chain=self.chain.id,
            tx_id=event.tx_id,
            version=event.version,
            event_index=event.event_index,
            timestamp=event.timestamp,
            stealth_owner=event.stealth_owner,
            ephemeral_pubkey=event.ephemeral_pubkey,
            payer=event.payer,
            asset_id=event.asset_id,
            amount=event.amount,
            encrypted_label=event.encrypted_label,
            memo=event.memo,
            encrypted_note=event.encrypted_note,
        )
        stored = await self.repo.insert_payment(payment)
        if stored is None:
            logger.debug(f"Payment {event.tx_id}#{event.event_index} already indexed")
            return
        report.payments_indexed += 1

        await self.attribute_payment(stored, keys)
        await self.invalidator.invalidate_for_new_payment(
            stored.stealth_owner,
            stored.chain,
            link_id=stored.link_id,
            user_id=stored.owner_user_id,
        )
        if await self._pair_internal_transfer(stored):
            report.internal_transfers += 1

    async def attribute_payment(self, payment: IndexedPayment, keys: List[RegisteredViewingKey]) -> bool:
        """Trial-decrypts against every key. Mutates and persists `payment` on a match."""
        process_id = payment_process_id(payment)
        scan = ProcessingType.PAYMENT_OWNER_SCAN
        if payment.owner_user_id or not await self.processing_log.should_process(process_id, scan):
            return False

        try:
            match = await asyncio.to_thread(resolve_ownership, payment, keys)
        except Exception as e:
            logger.error(f"Attribution of payment {payment.id} failed: {e}")
            match = None

        if match is None:
            await self.processing_log.mark_attempt(process_id, scan)
            return False

        payment.owner_user_id = match.user_id
        if match.note:
            payment.note = match.note
        if match.label:
            payment.label = match.label
            link = await self.repo.get_link(match.label.strip())
            if link:
                payment.link_id = link.link_id
        await self.repo.update_payment(payment)
        await self.processing_log.mark_complete(process_id, scan)
        logger.info(f"Payment {payment.tx_id}#{payment.event_index} belongs to user {match.user_id}")
        return True

    async def _pair_internal_transfer(self, payment: IndexedPayment) -> bool:
        """
        A payment whose payer is itself a known stealth address moves funds
        between stealth addresses. It is recorded once more as a withdrawal
        from the payer's address.
        """
        if not payment.payer:
            return False
        source = await self.repo.get_latest_payment_for_address(payment.payer, payment.chain)
        if source is None:
            return False

        await self._link_payer(payment, source.owner_user_id)

        withdrawal = IndexedWithdrawal(
            chain=payment.chain,
            tx_id=payment.tx_id,
            version=payment.version,
            timestamp=payment.timestamp,
            stealth_owner=payment.payer,
            destination=payment.stealth_owner,
            asset_id=payment.asset_id,
            amount=payment.amount,
            user_id=source.owner_user_id,
            destination_user_id=payment.owner_user_id,
            is_internal_transfer=True,
            is_processed=True,
        )
        stored = await self.repo.insert_withdrawal(withdrawal)
        if stored is None:
            return False

        process_id = withdrawal_process_id(stored)
        await self.processing_log.mark_complete(process_id, ProcessingType.WITHDRAWAL_USER_ID_SCAN)
        await self.processing_log.mark_complete(process_id, ProcessingType.WITHDRAWAL_DESTINATION_USER_ID_SCAN)
        await self.invalidator.invalidate_for_new_withdrawal(stored.stealth_owner, stored.chain, stored.user_id)
        logger.info(f"Internal transfer {payment.tx_id}: {payment.payer} -> {payment.stealth_owner}")
        return True

    async def _link_payer(self, payment: IndexedPayment, payer_user_id: Optional[str]) -> None:
        process_id = payment_process_id(payment)
        scan = ProcessingType.PAYMENT_PAYER_USER_ID_SCAN
        if payer_user_id is None:
            await self.processing_log.mark_attempt(process_id, scan)
            return
        payment.payer_user_id = payer_user_id
        await self.repo.update_payment(payment)
        await self.processing_log.mark_complete(process_id, scan)

    async def _backfill_internal_transfer(self, payment: IndexedPayment) -> None:
        for withdrawal in await self.repo.list_withdrawals_by_tx(payment.tx_id, payment.chain):
            if withdrawal.is_internal_transfer and withdrawal.stealth_owner == payment.payer and not withdrawal.user_id:
                withdrawal.user_id = payment.payer_user_id
                await self.repo.update_withdrawal(withdrawal)
                await self.invalidator.invalidate_for_new_withdrawal(
                    withdrawal.stealth_owner, withdrawal.chain, withdrawal.user_id
                )

    # --- Withdrawals ---

    async def _index_withdrawal(self, event: WithdrawalEvent, keys: List[RegisteredViewingKey], report: IndexCycleReport) -> None:
        withdrawal = IndexedWithdrawal(
            chain=self.chain.id,
            tx_id=event.tx_id,
            version=event.version,
            timestamp=event.timestamp,
            stealth_owner=event.stealth_owner,
            destination=event.destination,
            asset_id=event.asset_id,
            amount=event.amount,
            amount_after_fee=event.amount,
        )
        stored = await self.repo.insert_withdrawal(withdrawal)
        if stored is None:
            logger.debug(f"Withdrawal {event.tx_id} from {event.stealth_owner} already indexed")
            return
        report.withdrawals_indexed += 1

        await self.attribute_withdrawal(stored, keys)
        await self.invalidator.invalidate_for_new_withdrawal(stored.stealth_owner, stored.chain, stored.user_id)

    async def attribute_withdrawal(self, withdrawal: IndexedWithdrawal, keys: List[RegisteredViewingKey]) -> bool:
        """
        Links the withdrawing user through the latest payment into the
        address, then the destination user if the destination is a known
        stealth address. Returns True when the withdrawing user was linked.
        """
        process_id = withdrawal_process_id(withdrawal)
        linked = False

        user_scan = ProcessingType.WITHDRAWAL_USER_ID_SCAN
        if not withdrawal.user_id and await self.processing_log.should_process(process_id, user_scan):
            user_id = await self._owner_of_address(withdrawal.stealth_owner, keys)
            if user_id:
                withdrawal.user_id = user_id
                withdrawal.is_processed = True
                await self.repo.update_withdrawal(withdrawal)
                await self.processing_log.mark_complete(process_id, user_scan)
                logger.info(f"Withdrawal {withdrawal.tx_id} linked to user {user_id}")
                linked = True
            else:
                await self.processing_log.mark_attempt(process_id, user_scan)

        destination_scan = ProcessingType.WITHDRAWAL_DESTINATION_USER_ID_SCAN
        if not withdrawal.destination_user_id and await self.processing_log.should_process(process_id, destination_scan):
            destination_payment = await self.repo.get_latest_payment_for_address(withdrawal.destination, withdrawal.chain)
            if destination_payment and destination_payment.owner_user_id:
                withdrawal.destination_user_id = destination_payment.owner_user_id
                await self.repo.update_withdrawal(withdrawal)
            await self.processing_log.mark_complete(process_id, destination_scan)

        return linked

    async def _owner_of_address(self, address: str, keys: List[RegisteredViewingKey]) -> Optional[str]:
        payment = await self.repo.get_latest_payment_for_address(address, self.chain.id)
        if payment is None:
            return None
        if payment.owner_user_id:
            return payment.owner_user_id
        if not payment.memo:
            return None
        try:
            match = await asyncio.to_thread(resolve_ownership, payment, keys)
        except Exception as e:
            logger.error(f"Ownership lookup for {address} failed: {e}")
            return None
        return match.user_id if match else None

    # --- Reprocessing jobs ---

    async def reprocess_unlinked_withdrawals(self, limit: int = 50) -> int:
        """Retries attribution for unprocessed withdrawals that have no user."""
        try:
            unlinked = await self.repo.list_unlinked_withdrawals(self.chain.id, limit)
            if not unlinked:
                return 0
            keys = await self.repo.list_registered_viewing_keys()
        except Exception as e:
            logger.error(f"Error loading unlinked withdrawals: {e}")
            return 0

        tx_ids = list(dict.fromkeys(w.tx_id for w in unlinked))
        logger.info(f"Found {len(tx_ids)} transactions with unlinked withdrawals to re-process")

        linked = 0
        for tx_id in tx_ids:
            try:
                for withdrawal in await self.repo.list_withdrawals_by_tx(tx_id, self.chain.id):
                    if await self.attribute_withdrawal(withdrawal, keys):
                        linked += 1
                        await self.invalidator.invalidate_for_new_withdrawal(
                            withdrawal.stealth_owner, withdrawal.chain, withdrawal.user_id
                        )
            except Exception as e:
                logger.error(f"Error re-processing withdrawals of {tx_id}: {e}")
        return linked

    async def reprocess_unattributed(self, limit: int = 50) -> int:
        """Retries scans that the processing log holds as unfinished."""
        try:
            keys = await self.repo.list_registered_viewing_keys()
        except Exception as e:
            logger.error(f"Error loading viewing keys: {e}")
            return 0

        resolved = 0
        for scan in ProcessingType:
            try:
                entries = await self.processing_log.get_unprocessed(scan, limit)
            except Exception as e:
                logger.error(f"Error loading unprocessed {scan.value} entries: {e}")
                continue
            for entry in entries:
                try:
                    if await self._retry_entry(scan, entry.process_id, keys):
                        resolved += 1
                except Exception as e:
                    logger.error(f"Retry of {scan.value} {entry.process_id} failed: {e}")

        if resolved:
            logger.info(f"Re-processing resolved {resolved} attribution scans")
        return resolved

    async def _retry_entry(self, scan: ProcessingType, process_id: str, keys: List[RegisteredViewingKey]) -> bool:
        parsed = parse_process_id(process_id)
        if parsed is None:
            logger.warning(f"Unrecognised process id {process_id}")
            return False
        kind, record_id = parsed

        if kind == "payment":
            payment = await self.repo.get_payment(record_id)
            if payment is None:
                return False
            if scan == ProcessingType.PAYMENT_OWNER_SCAN:
                if await self.attribute_payment(payment, keys):
                    await self.invalidator.invalidate_for_new_payment(
                        payment.stealth_owner, payment.chain, payment.link_id, payment.owner_user_id
                    )
                    return True
                return False
            if scan == ProcessingType.PAYMENT_PAYER_USER_ID_SCAN and payment.payer:
                source = await self.repo.get_latest_payment_for_address(payment.payer, payment.chain)
                await self._link_payer(payment, source.owner_user_id if source else None)
                if payment.payer_user_id is None:
                    return False
                await self._backfill_internal_transfer(payment)
                return True
            return False

        withdrawal = await self.repo.get_withdrawal(record_id)
        if withdrawal is None:
            return False
        return await self.attribute_withdrawal(withdrawal, keys)
