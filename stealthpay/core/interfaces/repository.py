from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from stealthpay.core.entities.ledger import (
    IndexedPayment,
    IndexedWithdrawal,
    BalanceAdjustment,
    LinkRef,
    AddressActivity,
)
from stealthpay.core.entities.balance import (
    AssetInfo,
    AddressBalanceCache,
    UserBalanceSummary,
    CacheStats,
)
from stealthpay.core.entities.keys import RegisteredViewingKey
from stealthpay.core.entities.processing import ProcessingLogEntry, ProcessingType


class ILedgerRepository(ABC):
    """
    Persistence for indexed activity, balance caches and processing state.

    Inserts keyed by a natural key are idempotent: a duplicate insert
    returns None and leaves the stored row untouched.
    """

    # --- Payments ---

    @abstractmethod
    async def get_max_version(self, chain: str) -> int:
        """Highest chain version across payments and withdrawals, 0 if none."""
        pass

    @abstractmethod
    async def insert_payment(self, payment: IndexedPayment) -> Optional[IndexedPayment]:
        pass

    @abstractmethod
    async def get_payment(self, payment_id: int) -> Optional[IndexedPayment]:
        pass

    @abstractmethod
    async def update_payment(self, payment: IndexedPayment) -> None:
        """Persists enrichment fields (label, note, link, owner, payer user)."""
        pass

    @abstractmethod
    async def list_payments_for_address(self, address: str, chain: str) -> List[IndexedPayment]:
        pass

    @abstractmethod
    async def get_latest_payment_for_address(self, address: str, chain: str) -> Optional[IndexedPayment]:
        pass

    @abstractmethod
    async def list_user_payments(self, user_id: str, chain: str) -> List[IndexedPayment]:
        pass

    # --- Withdrawals ---

    @abstractmethod
    async def insert_withdrawal(self, withdrawal: IndexedWithdrawal) -> Optional[IndexedWithdrawal]:
        pass

    @abstractmethod
    async def get_withdrawal(self, withdrawal_id: int) -> Optional[IndexedWithdrawal]:
        pass

    @abstractmethod
    async def update_withdrawal(self, withdrawal: IndexedWithdrawal) -> None:
        pass

    @abstractmethod
    async def list_withdrawals_for_address(self, address: str, chain: str) -> List[IndexedWithdrawal]:
        pass

    @abstractmethod
    async def list_withdrawals_by_tx(self, tx_id: str, chain: str) -> List[IndexedWithdrawal]:
        pass

    @abstractmethod
    async def list_user_withdrawals(self, user_id: str, chain: str) -> List[IndexedWithdrawal]:
        pass

    @abstractmethod
    async def list_unlinked_withdrawals(self, chain: str, limit: int = 50) -> List[IndexedWithdrawal]:
        """Unprocessed withdrawals with no user whose user scan is under its retry ceiling, oldest first."""
        pass

    # --- Adjustments ---

    @abstractmethod
    async def list_adjustments_for_address(self, address: str, chain: str) -> List[BalanceAdjustment]:
        pass

    @abstractmethod
    async def list_user_adjustments(self, user_id: str, chain: str) -> List[BalanceAdjustment]:
        pass

    @abstractmethod
    async def upsert_adjustment(self, adjustment: BalanceAdjustment) -> None:
        pass

    @abstractmethod
    async def delete_adjustments(self, address: str, chain: str, asset_id: Optional[str] = None) -> int:
        pass

    # --- Address cache & summaries ---

    @abstractmethod
    async def get_address_cache(self, address: str, chain: str) -> Optional[AddressBalanceCache]:
        pass

    @abstractmethod
    async def upsert_address_cache(self, cache: AddressBalanceCache) -> None:
        pass

    @abstractmethod
    async def delete_address_cache(self, address: str, chain: str) -> int:
        pass

    @abstractmethod
    async def list_address_caches(self, addresses: List[str], chain: str) -> List[AddressBalanceCache]:
        pass

    @abstractmethod
    async def delete_address_caches_older_than(self, before: datetime) -> int:
        pass

    @abstractmethod
    async def get_user_summary(self, user_id: str, chain: str) -> Optional[UserBalanceSummary]:
        pass

    @abstractmethod
    async def upsert_user_summary(self, summary: UserBalanceSummary) -> None:
        pass

    @abstractmethod
    async def mark_user_summary_stale(self, user_id: str, chain: str, at: datetime) -> None:
        pass

    @abstractmethod
    async def delete_user_summaries_older_than(self, before: datetime) -> int:
        pass

    @abstractmethod
    async def get_cache_stats(self, fresh_after: datetime) -> CacheStats:
        pass

    # --- Processing log ---

    @abstractmethod
    async def get_processing_log(self, process_id: str, process_type: ProcessingType) -> Optional[ProcessingLogEntry]:
        pass

    @abstractmethod
    async def record_processing_attempt(
        self,
        process_id: str,
        process_type: ProcessingType,
        success: bool,
        at: datetime,
        max_retries: int = 5
    ) -> ProcessingLogEntry:
        """Creates the entry or increments its count, setting is_processed=success."""
        pass

    @abstractmethod
    async def list_unprocessed(self, process_type: ProcessingType, limit: int = 50) -> List[ProcessingLogEntry]:
        """Entries not processed and under their retry ceiling, oldest first."""
        pass

    # --- Assets ---

    @abstractmethod
    async def get_asset(self, asset_id: str, chain: str) -> Optional[AssetInfo]:
        pass

    @abstractmethod
    async def upsert_asset(self, asset: AssetInfo) -> None:
        pass

    # --- Activity views ---

    @abstractmethod
    async def latest_address_activity(self, address: str, chain: str) -> int:
        """Latest payment or withdrawal timestamp at the address, 0 if none."""
        pass

    @abstractmethod
    async def latest_user_activity(self, user_id: str, chain: str) -> int:
        pass

    @abstractmethod
    async def list_user_addresses(self, user_id: str, chain: str) -> List[str]:
        pass

    @abstractmethod
    async def list_address_activity(self, chain: str, since: int = 0) -> List[AddressActivity]:
        """
        One row per attributed stealth address whose latest activity is at
        or after `since`, newest first.
        """
        pass

    # --- Registries (owned by collaborators, read-only here) ---

    @abstractmethod
    async def list_registered_viewing_keys(self) -> List[RegisteredViewingKey]:
        pass

    @abstractmethod
    async def get_link(self, link_id: str) -> Optional[LinkRef]:
        pass
