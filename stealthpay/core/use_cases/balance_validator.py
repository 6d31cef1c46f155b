import asyncio
import logging
from typing import Optional

from pydantic import BaseModel

from stealthpay.config import Settings
from stealthpay.core.interfaces.repository import ILedgerRepository
from stealthpay.core.timing import is_stopped, utcnow
from stealthpay.core.use_cases.address_priority import (
    PrioritizedAddress,
    count_active_users,
    select_priority_addresses,
    select_stale_addresses,
    validation_scale,
)
from stealthpay.core.use_cases.reconciliation import Reconciler
from stealthpay.core.use_cases.rpc_snapshot import RpcSnapshotService

logger = logging.getLogger(__name__)

BASE_PRIORITY_LIMIT = 50
BASE_STALE_LIMIT = 20


class ValidationReport(BaseModel):
    active_users: int = 0
    priority_selected: int = 0
    stale_selected: int = 0
    validated: int = 0
    skipped_fresh: int = 0
    adjustments_upserted: int = 0
    adjustments_deleted: int = 0
    anomalies: int = 0
    errors: int = 0
    skipped_run: bool = False


class BalanceValidationWorker:
    """
    Periodically refreshes RPC snapshots and reconciles them against the
    indexed activity. Addresses are processed one at a time so the RPC
    gate is never contended by this worker.
    """

    def __init__(
        self,
        repo: ILedgerRepository,
        snapshots: RpcSnapshotService,
        reconciler: Reconciler,
        settings: Settings
    ):
        self.repo = repo
        self.snapshots = snapshots
        self.reconciler = reconciler
        self.settings = settings
        self.chain_id = settings.chain_id
        self._run_lock = asyncio.Lock()

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> ValidationReport:
        if self._run_lock.locked():
            logger.info("Balance validation already running, skipping")
            return ValidationReport(skipped_run=True)

        async with self._run_lock:
            report = ValidationReport()
            try:
                await self._run(report, stop_event)
            except Exception as e:
                logger.error(f"Balance validation run failed: {e}")
                report.errors += 1
            return report

    async def _run(self, report: ValidationReport, stop_event: Optional[asyncio.Event]) -> None:
        now = utcnow()
        ledger = self.settings.ledger

        report.active_users = await count_active_users(self.repo, self.chain_id, now)
        scale = validation_scale(report.active_users)
        priority_limit = int(BASE_PRIORITY_LIMIT * scale)
        stale_limit = int(BASE_STALE_LIMIT * scale)

        priority = await select_priority_addresses(
            self.repo, self.chain_id, priority_limit, report.active_users, ledger, now
        )
        stale = await select_stale_addresses(
            self.repo, self.chain_id, stale_limit, ledger, now, exclude={p.address for p in priority}
        )
        report.priority_selected = len(priority)
        report.stale_selected = len(stale)

        if not priority and not stale:
            logger.debug("No addresses to validate")
            return

        logger.info(
            f"Validating {len(priority)} priority and {len(stale)} stale addresses "
            f"for {report.active_users} active users (scale {scale:.2f})"
        )
        for entry in priority + stale:
            if is_stopped(stop_event):
                logger.info("Balance validation stopped")
                return
            await self.process_address(entry, report=report)

        logger.info(
            f"Balance validation done: {report.validated} validated, {report.skipped_fresh} fresh, "
            f"{report.adjustments_upserted} adjusted, {report.anomalies} anomalies, {report.errors} errors"
        )

    async def process_address(
        self,
        entry: PrioritizedAddress,
        force: bool = False,
        report: Optional[ValidationReport] = None
    ) -> ValidationReport:
        report = report or ValidationReport()
        try:
            cached = await self.repo.get_address_cache(entry.address, self.chain_id)
            if not force and cached and self.snapshots.is_fresh_for_tier(cached, entry.priority.value):
                report.skipped_fresh += 1
                return report

            snapshot = await self.snapshots.validate_address(entry.address, self.chain_id)
            report.validated += 1

            outcome = await self.reconciler.reconcile_address(entry.address, self.chain_id, entry.user_id, snapshot)
            report.adjustments_upserted += outcome.upserted
            report.adjustments_deleted += outcome.deleted
            report.anomalies += len(outcome.anomalies)
        except Exception as e:
            logger.error(f"Validation of {entry.address} failed: {e}")
            report.errors += 1
        return report
