"""
Reconciliation of indexed activity against on-chain snapshots.

For every asset at an address the difference between what the chain holds
and what the indexed activity adds up to is absorbed by a single signed
adjustment row, provided the difference is small enough to be plausible.
"""
import logging
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from stealthpay.config import LedgerSettings, Settings
from stealthpay.core.entities.balance import AddressBalanceCache
from stealthpay.core.entities.ledger import BalanceAdjustment
from stealthpay.core.errors import ReconciliationAnomaly
from stealthpay.core.interfaces.repository import ILedgerRepository
from stealthpay.core.timing import utcnow
from stealthpay.core.use_cases.activity_calculator import ActivityBalanceCalculator

logger = logging.getLogger(__name__)


class AdjustmentAction(str, Enum):
    DELETE = "delete"
    UPSERT = "upsert"
    ANOMALY = "anomaly"


class AdjustmentDecision(BaseModel):
    action: AdjustmentAction
    difference: Decimal  # token units, rpc minus activity
    adjustment_amount: int = 0


def decide_adjustment(activity_raw: int, rpc_raw: int, decimals: int, settings: LedgerSettings) -> AdjustmentDecision:
    raw_diff = rpc_raw - activity_raw
    difference = Decimal(raw_diff) / (Decimal(10) ** decimals)
    magnitude = abs(difference)

    if magnitude <= Decimal(str(settings.adjustment_epsilon)):
        return AdjustmentDecision(action=AdjustmentAction.DELETE, difference=difference)
    if magnitude > Decimal(str(settings.adjustment_ceiling)):
        return AdjustmentDecision(action=AdjustmentAction.ANOMALY, difference=difference)
    return AdjustmentDecision(action=AdjustmentAction.UPSERT, difference=difference, adjustment_amount=raw_diff)


class ReconcileOutcome(BaseModel):
    address: str
    skipped: Optional[str] = None
    upserted: int = 0
    deleted: int = 0
    anomalies: List[str] = []


class Reconciler:
    def __init__(self, repo: ILedgerRepository, settings: Settings):
        self.repo = repo
        self.settings = settings
        self.ledger = settings.ledger
        self.activity = ActivityBalanceCalculator(repo)

    async def reconcile_address(
        self,
        address: str,
        chain: str,
        user_id: Optional[str],
        snapshot: AddressBalanceCache
    ) -> ReconcileOutcome:
        outcome = ReconcileOutcome(address=address)

        age = (utcnow() - snapshot.last_fetched).total_seconds()
        if age > self.ledger.rpc_fresh_window:
            outcome.skipped = "stale_snapshot"
            return outcome
        if not user_id:
            logger.warning(f"No user known for {address}, not adjusting")
            outcome.skipped = "no_user"
            return outcome

        config = self.settings.chains.get(chain) or self.settings.chain
        activity = await self.activity.calculate_address_totals(address, chain, include_adjustments=False)

        asset_ids = set(activity) | {h.asset_id for h in snapshot.assets}
        if snapshot.native_amount:
            asset_ids.add(config.native_asset)

        now = utcnow()
        for asset_id in sorted(asset_ids):
            asset = await self.repo.get_asset(asset_id, chain)
            if asset is not None:
                decimals = asset.decimals
            elif asset_id == config.native_asset:
                decimals = config.native_decimals
            else:
                logger.warning(f"No metadata for {asset_id}, skipping adjustment at {address}")
                continue

            decision = decide_adjustment(
                activity.get(asset_id, 0),
                snapshot.amount_of(asset_id, config.native_asset),
                decimals,
                self.ledger,
            )

            if decision.action == AdjustmentAction.DELETE:
                outcome.deleted += await self.repo.delete_adjustments(address, chain, asset_id)
            elif decision.action == AdjustmentAction.UPSERT:
                await self.repo.upsert_adjustment(
                    BalanceAdjustment(
                        chain=chain,
                        stealth_owner=address,
                        asset_id=asset_id,
                        user_id=user_id,
                        adjustment_amount=decision.adjustment_amount,
                        created_at=now,
                        updated_at=now,
                    )
                )
                outcome.upserted += 1
                logger.info(f"Adjusted {address} {asset_id} by {decision.difference}")
            else:
                anomaly = ReconciliationAnomaly(address, asset_id, decision.difference)
                logger.warning(f"Reconciliation anomaly: {anomaly}")
                outcome.anomalies.append(str(anomaly))

        return outcome
