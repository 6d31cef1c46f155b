"""
Activity replay: balances recomputed from indexed payments, withdrawals and
adjustments. This is the primary balance source because it reflects new
activity as soon as it is indexed.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from stealthpay.core.entities.balance import CalculatedBalance
from stealthpay.core.entities.ledger import IndexedPayment, IndexedWithdrawal, BalanceAdjustment
from stealthpay.core.interfaces.repository import ILedgerRepository
from stealthpay.core.use_cases.balance_format import AddressAmount, assemble_balances, load_assets

logger = logging.getLogger(__name__)

ADJUSTMENT_MEMO = "Balance Adjustment"


def net_by_address(
    payments: List[IndexedPayment],
    withdrawals: List[IndexedWithdrawal],
    adjustments: List[BalanceAdjustment]
) -> Dict[Tuple[str, str], AddressAmount]:
    """
    Signed raw total per (asset, address): payments minus effective
    withdrawals plus adjustments. The latest payment supplies the
    ephemeral key and memo shown with the address.
    """
    groups: Dict[Tuple[str, str], AddressAmount] = {}
    latest: Dict[Tuple[str, str], int] = {}

    for payment in payments:
        key = (payment.asset_id, payment.stealth_owner)
        group = groups.get(key)
        if group is None:
            group = groups[key] = AddressAmount(asset_id=payment.asset_id, address=payment.stealth_owner, raw=Decimal(0))
            latest[key] = -1
        group.raw += payment.amount
        if payment.timestamp > latest[key]:
            latest[key] = payment.timestamp
            group.ephemeral_pubkey = payment.ephemeral_pubkey
            group.memo = payment.memo

    for withdrawal in withdrawals:
        key = (withdrawal.asset_id, withdrawal.stealth_owner)
        group = groups.setdefault(key, AddressAmount(asset_id=withdrawal.asset_id, address=withdrawal.stealth_owner, raw=Decimal(0)))
        group.raw -= withdrawal.effective_amount

    for adjustment in adjustments:
        key = (adjustment.asset_id, adjustment.stealth_owner)
        group = groups.get(key)
        if group is None:
            group = groups[key] = AddressAmount(
                asset_id=adjustment.asset_id,
                address=adjustment.stealth_owner,
                raw=Decimal(0),
                memo=ADJUSTMENT_MEMO,
            )
        group.raw += adjustment.adjustment_amount

    return groups


class ActivityBalanceCalculator:
    def __init__(self, repo: ILedgerRepository):
        self.repo = repo

    async def calculate_user_balance(self, user_id: str, chain: str) -> Optional[CalculatedBalance]:
        """None when the user has no activity at all on the chain."""
        payments = await self.repo.list_user_payments(user_id, chain)
        withdrawals = await self.repo.list_user_withdrawals(user_id, chain)
        adjustments = await self.repo.list_user_adjustments(user_id, chain)

        record_count = len(payments) + len(withdrawals) + len(adjustments)
        if record_count == 0:
            return None

        groups = net_by_address(payments, withdrawals, adjustments)
        addresses = {address for _, address in groups}
        assets = await load_assets(self.repo, (asset_id for asset_id, _ in groups), chain)
        return assemble_balances(groups.values(), assets, addresses, record_count=record_count)

    async def calculate_address_totals(self, address: str, chain: str, include_adjustments: bool = True) -> Dict[str, int]:
        """
        Signed raw totals per asset for one address across every indexed
        record at it, regardless of attribution. Not clamped at zero.
        """
        payments = await self.repo.list_payments_for_address(address, chain)
        withdrawals = await self.repo.list_withdrawals_for_address(address, chain)
        adjustments = await self.repo.list_adjustments_for_address(address, chain) if include_adjustments else []

        groups = net_by_address(payments, withdrawals, adjustments)
        return {asset_id: int(group.raw) for (asset_id, _), group in groups.items()}
