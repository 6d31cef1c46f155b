"""
Retry bookkeeping for attribution work.

Every unit of work (a payment owner scan, a withdrawal user scan, ...) is
keyed by a process id and type. Work is retried until it succeeds or hits
its retry ceiling.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from stealthpay.core.entities.ledger import IndexedPayment, IndexedWithdrawal
from stealthpay.core.entities.processing import ProcessingLogEntry, ProcessingType
from stealthpay.core.interfaces.repository import ILedgerRepository

logger = logging.getLogger(__name__)


def payment_process_id(payment: IndexedPayment) -> str:
    return f"payment:{payment.id}"


def withdrawal_process_id(withdrawal: IndexedWithdrawal) -> str:
    return f"withdrawal:{withdrawal.id}"


def parse_process_id(process_id: str) -> Optional[Tuple[str, int]]:
    kind, _, raw_id = process_id.partition(":")
    if kind not in ("payment", "withdrawal") or not raw_id.isdigit():
        return None
    return kind, int(raw_id)


class ProcessingLog:
    def __init__(self, repo: ILedgerRepository, max_retries: int = 5):
        self.repo = repo
        self.max_retries = max_retries

    async def should_process(self, process_id: str, process_type: ProcessingType) -> bool:
        entry = await self.repo.get_processing_log(process_id, process_type)
        if entry is None:
            return True
        if entry.is_processed:
            return False
        return entry.processed_count < entry.max_retries

    async def mark_attempt(self, process_id: str, process_type: ProcessingType, success: bool = False) -> ProcessingLogEntry:
        entry = await self.repo.record_processing_attempt(
            process_id,
            process_type,
            success,
            datetime.now(timezone.utc),
            self.max_retries,
        )
        if not success and entry.processed_count >= entry.max_retries:
            logger.info(f"{process_type.value} for {process_id} reached retry ceiling ({entry.max_retries})")
        return entry

    async def mark_complete(self, process_id: str, process_type: ProcessingType) -> ProcessingLogEntry:
        return await self.mark_attempt(process_id, process_type, success=True)

    async def get_unprocessed(self, process_type: ProcessingType, limit: int = 50) -> List[ProcessingLogEntry]:
        return await self.repo.list_unprocessed(process_type, limit)
