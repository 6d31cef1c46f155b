"""
In-process ILedgerRepository for local runs and tests.

Methods never await between a uniqueness check and the write that follows
it, so concurrent coroutines see the same dedupe guarantees as the
database constraints give PostgresLedgerRepo. Stored and returned models are
copies.
"""
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from stealthpay.core.entities.balance import AddressBalanceCache, AssetInfo, CacheStats, UserBalanceSummary
from stealthpay.core.entities.keys import RegisteredViewingKey
from stealthpay.core.entities.ledger import (
    AddressActivity,
    BalanceAdjustment,
    IndexedPayment,
    IndexedWithdrawal,
    LinkRef,
)
from stealthpay.core.entities.processing import ProcessingLogEntry, ProcessingType
from stealthpay.core.interfaces.repository import ILedgerRepository


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryLedgerRepo(ILedgerRepository):
    def __init__(self):
        self.payments: Dict[int, IndexedPayment] = {}
        self.withdrawals: Dict[int, IndexedWithdrawal] = {}
        self._payment_keys: Dict[tuple, int] = {}
        self._withdrawal_keys: Dict[tuple, int] = {}
        self.adjustments: Dict[Tuple[str, str, str, str], BalanceAdjustment] = {}
        self.address_caches: Dict[Tuple[str, str], AddressBalanceCache] = {}
        self.summaries: Dict[Tuple[str, str], UserBalanceSummary] = {}
        self.processing_logs: Dict[Tuple[str, ProcessingType], ProcessingLogEntry] = {}
        self.assets: Dict[Tuple[str, str], AssetInfo] = {}
        self.viewing_keys: List[RegisteredViewingKey] = []
        self.links: Dict[str, LinkRef] = {}
        self._next_id = 1

    def _new_id(self) -> int:
        record_id = self._next_id
        self._next_id += 1
        return record_id

    # --- Seeding collaborator registries ---

    def add_viewing_key(self, key: RegisteredViewingKey):
        self.viewing_keys.append(_copy(key))

    def add_link(self, link: LinkRef):
        self.links[link.link_id] = _copy(link)

    # --- Payments ---

    async def get_max_version(self, chain: str) -> int:
        versions = [p.version for p in self.payments.values() if p.chain == chain]
        versions += [w.version for w in self.withdrawals.values() if w.chain == chain]
        return max(versions, default=0)

    async def insert_payment(self, payment: IndexedPayment) -> Optional[IndexedPayment]:
        key = payment.natural_key
        if key in self._payment_keys:
            return None
        stored = payment.model_copy(update={"id": self._new_id()}, deep=True)
        self._payment_keys[key] = stored.id
        self.payments[stored.id] = stored
        return _copy(stored)

    async def get_payment(self, payment_id: int) -> Optional[IndexedPayment]:
        return _copy(self.payments.get(payment_id))

    async def update_payment(self, payment: IndexedPayment) -> None:
        if payment.id in self.payments:
            self.payments[payment.id] = _copy(payment)

    async def list_payments_for_address(self, address: str, chain: str) -> List[IndexedPayment]:
        rows = [p for p in self.payments.values() if p.stealth_owner == address and p.chain == chain]
        return [_copy(p) for p in sorted(rows, key=lambda p: (p.timestamp, p.id))]

    async def get_latest_payment_for_address(self, address: str, chain: str) -> Optional[IndexedPayment]:
        rows = await self.list_payments_for_address(address, chain)
        return rows[-1] if rows else None

    async def list_user_payments(self, user_id: str, chain: str) -> List[IndexedPayment]:
        rows = [p for p in self.payments.values() if p.owner_user_id == user_id and p.chain == chain]
        return [_copy(p) for p in sorted(rows, key=lambda p: (p.timestamp, p.id))]

    # --- Withdrawals ---

    async def insert_withdrawal(self, withdrawal: IndexedWithdrawal) -> Optional[IndexedWithdrawal]:
        key = withdrawal.natural_key
        if key in self._withdrawal_keys:
            return None
        stored = withdrawal.model_copy(update={"id": self._new_id()}, deep=True)
        self._withdrawal_keys[key] = stored.id
        self.withdrawals[stored.id] = stored
        return _copy(stored)

    async def get_withdrawal(self, withdrawal_id: int) -> Optional[IndexedWithdrawal]:
        return _copy(self.withdrawals.get(withdrawal_id))

    async def update_withdrawal(self, withdrawal: IndexedWithdrawal) -> None:
        if withdrawal.id in self.withdrawals:
            self.withdrawals[withdrawal.id] = _copy(withdrawal)

    async def list_withdrawals_for_address(self, address: str, chain: str) -> List[IndexedWithdrawal]:
        rows = [w for w in self.withdrawals.values() if w.stealth_owner == address and w.chain == chain]
        return [_copy(w) for w in sorted(rows, key=lambda w: (w.timestamp, w.id))]

    async def list_withdrawals_by_tx(self, tx_id: str, chain: str) -> List[IndexedWithdrawal]:
        rows = [w for w in self.withdrawals.values() if w.tx_id == tx_id and w.chain == chain]
        return [_copy(w) for w in sorted(rows, key=lambda w: w.id)]

    async def list_user_withdrawals(self, user_id: str, chain: str) -> List[IndexedWithdrawal]:
        rows = [w for w in self.withdrawals.values() if w.user_id == user_id and w.chain == chain]
        return [_copy(w) for w in sorted(rows, key=lambda w: (w.timestamp, w.id))]

    def _at_ceiling(self, withdrawal: IndexedWithdrawal) -> bool:
        entry = self.processing_logs.get((f"withdrawal:{withdrawal.id}", ProcessingType.WITHDRAWAL_USER_ID_SCAN))
        return entry is not None and entry.processed_count >= entry.max_retries

    async def list_unlinked_withdrawals(self, chain: str, limit: int = 50) -> List[IndexedWithdrawal]:
        rows = [
            w for w in self.withdrawals.values()
            if w.chain == chain and not w.is_processed and not w.user_id and not self._at_ceiling(w)
        ]
        return [_copy(w) for w in sorted(rows, key=lambda w: (w.timestamp, w.id))[:limit]]

    # --- Adjustments ---

    async def list_adjustments_for_address(self, address: str, chain: str) -> List[BalanceAdjustment]:
        return [_copy(a) for a in self.adjustments.values() if a.stealth_owner == address and a.chain == chain]

    async def list_user_adjustments(self, user_id: str, chain: str) -> List[BalanceAdjustment]:
        return [_copy(a) for a in self.adjustments.values() if a.user_id == user_id and a.chain == chain]

    async def upsert_adjustment(self, adjustment: BalanceAdjustment) -> None:
        existing = self.adjustments.get(adjustment.key)
        stored = _copy(adjustment)
        if existing:
            stored.created_at = existing.created_at
        self.adjustments[adjustment.key] = stored

    async def delete_adjustments(self, address: str, chain: str, asset_id: Optional[str] = None) -> int:
        doomed = [
            key for key, a in self.adjustments.items()
            if a.stealth_owner == address and a.chain == chain and (asset_id is None or a.asset_id == asset_id)
        ]
        for key in doomed:
            del self.adjustments[key]
        return len(doomed)

    # --- Address cache & summaries ---

    async def get_address_cache(self, address: str, chain: str) -> Optional[AddressBalanceCache]:
        return _copy(self.address_caches.get((address, chain)))

    async def upsert_address_cache(self, cache: AddressBalanceCache) -> None:
        self.address_caches[(cache.address, cache.chain)] = _copy(cache)

    async def delete_address_cache(self, address: str, chain: str) -> int:
        return 1 if self.address_caches.pop((address, chain), None) else 0

    async def list_address_caches(self, addresses: List[str], chain: str) -> List[AddressBalanceCache]:
        wanted = set(addresses)
        return [_copy(c) for (address, c_chain), c in self.address_caches.items() if address in wanted and c_chain == chain]

    async def delete_address_caches_older_than(self, before: datetime) -> int:
        doomed = [key for key, c in self.address_caches.items() if c.last_fetched < before]
        for key in doomed:
            del self.address_caches[key]
        return len(doomed)

    async def get_user_summary(self, user_id: str, chain: str) -> Optional[UserBalanceSummary]:
        return _copy(self.summaries.get((user_id, chain)))

    async def upsert_user_summary(self, summary: UserBalanceSummary) -> None:
        self.summaries[(summary.user_id, summary.chain)] = _copy(summary)

    async def mark_user_summary_stale(self, user_id: str, chain: str, at: datetime) -> None:
        summary = self.summaries.get((user_id, chain))
        if summary:
            summary.invalidated_at = at

    async def delete_user_summaries_older_than(self, before: datetime) -> int:
        doomed = [key for key, s in self.summaries.items() if s.last_full_refresh < before]
        for key in doomed:
            del self.summaries[key]
        return len(doomed)

    async def get_cache_stats(self, fresh_after: datetime) -> CacheStats:
        return CacheStats(
            address_cache_rows=len(self.address_caches),
            fresh_address_cache_rows=sum(1 for c in self.address_caches.values() if c.last_fetched >= fresh_after),
            user_summaries=len(self.summaries),
            stale_user_summaries=sum(1 for s in self.summaries.values() if s.invalidated_at is not None),
        )

    # --- Processing log ---

    async def get_processing_log(self, process_id: str, process_type: ProcessingType) -> Optional[ProcessingLogEntry]:
        return _copy(self.processing_logs.get((process_id, process_type)))

    async def record_processing_attempt(
        self,
        process_id: str,
        process_type: ProcessingType,
        success: bool,
        at: datetime,
        max_retries: int = 5
    ) -> ProcessingLogEntry:
        key = (process_id, process_type)
        entry = self.processing_logs.get(key)
        if entry is None:
            entry = self.processing_logs[key] = ProcessingLogEntry(
                process_id=process_id,
                process_type=process_type,
                max_retries=max_retries,
                created_at=at,
            )
        entry.processed_count += 1
        entry.is_processed = success
        entry.last_processed_at = at
        return _copy(entry)

    async def list_unprocessed(self, process_type: ProcessingType, limit: int = 50) -> List[ProcessingLogEntry]:
        rows = [
            e for e in self.processing_logs.values()
            if e.process_type == process_type and not e.is_processed and e.processed_count < e.max_retries
        ]
        return [_copy(e) for e in sorted(rows, key=lambda e: e.created_at)[:limit]]

    # --- Assets ---

    async def get_asset(self, asset_id: str, chain: str) -> Optional[AssetInfo]:
        return _copy(self.assets.get((asset_id, chain)))

    async def upsert_asset(self, asset: AssetInfo) -> None:
        self.assets[(asset.asset_id, asset.chain)] = _copy(asset)

    # --- Activity views ---

    async def latest_address_activity(self, address: str, chain: str) -> int:
        stamps = [p.timestamp for p in self.payments.values() if p.stealth_owner == address and p.chain == chain]
        stamps += [w.timestamp for w in self.withdrawals.values() if w.stealth_owner == address and w.chain == chain]
        return max(stamps, default=0)

    async def latest_user_activity(self, user_id: str, chain: str) -> int:
        stamps = [p.timestamp for p in self.payments.values() if p.owner_user_id == user_id and p.chain == chain]
        stamps += [w.timestamp for w in self.withdrawals.values() if w.user_id == user_id and w.chain == chain]
        return max(stamps, default=0)

    async def list_user_addresses(self, user_id: str, chain: str) -> List[str]:
        addresses = {p.stealth_owner for p in self.payments.values() if p.owner_user_id == user_id and p.chain == chain}
        return sorted(addresses)

    async def list_address_activity(self, chain: str, since: int = 0) -> List[AddressActivity]:
        records = [(p.stealth_owner, p.owner_user_id, p.timestamp) for p in self.payments.values() if p.chain == chain]
        records += [(w.stealth_owner, w.user_id, w.timestamp) for w in self.withdrawals.values() if w.chain == chain]

        grouped: Dict[str, AddressActivity] = {}
        counts: Dict[str, int] = defaultdict(int)
        for address, user_id, timestamp in records:
            if not user_id or timestamp < since:
                continue
            counts[address] += 1
            current = grouped.get(address)
            if current is None or timestamp > current.last_activity:
                grouped[address] = AddressActivity(address=address, user_id=user_id, last_activity=timestamp)

        for address, entry in grouped.items():
            entry.activity_count = counts[address]
        return sorted(grouped.values(), key=lambda e: (-e.last_activity, e.address))

    # --- Registries ---

    async def list_registered_viewing_keys(self) -> List[RegisteredViewingKey]:
        return [_copy(k) for k in self.viewing_keys]

    async def get_link(self, link_id: str) -> Optional[LinkRef]:
        return _copy(self.links.get(link_id))
