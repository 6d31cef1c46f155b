import logging
from decimal import Decimal, Context, ROUND_DOWN
from typing import Dict, Optional, Tuple

from stealthpay.core.entities.balance import CalculatedBalance
from stealthpay.core.interfaces.repository import ILedgerRepository
from stealthpay.core.use_cases.balance_format import AddressAmount, assemble_balances, load_assets

logger = logging.getLogger(__name__)

PRECISION = Context(prec=60, rounding=ROUND_DOWN)
QUANTUM = Decimal(1).scaleb(-30)


class HighPrecisionBalanceCalculator:
    """
    Chronological replay: every payment, withdrawal and adjustment is
    applied in (timestamp, version) order with 30 decimal places, rounding
    down. Used when the activity replay is unavailable.
    """

    def __init__(self, repo: ILedgerRepository):
        self.repo = repo

    async def calculate_user_balance(self, user_id: str, chain: str) -> Optional[CalculatedBalance]:
        payments = await self.repo.list_user_payments(user_id, chain)
        withdrawals = await self.repo.list_user_withdrawals(user_id, chain)
        adjustments = await self.repo.list_user_adjustments(user_id, chain)

        entries = []
        for p in payments:
            entries.append((p.timestamp, p.version, p.asset_id, p.stealth_owner, Decimal(p.amount), p))
        for w in withdrawals:
            entries.append((w.timestamp, w.version, w.asset_id, w.stealth_owner, -Decimal(w.effective_amount), None))
        for a in adjustments:
            entries.append((int(a.created_at.timestamp()), 0, a.asset_id, a.stealth_owner, Decimal(a.adjustment_amount), None))

        if not entries:
            return None
        entries.sort(key=lambda e: (e[0], e[1]))

        balances: Dict[Tuple[str, str], AddressAmount] = {}
        for _, _, asset_id, address, delta, payment in entries:
            key = (asset_id, address)
            group = balances.setdefault(key, AddressAmount(asset_id=asset_id, address=address, raw=Decimal(0)))
            group.raw = PRECISION.add(group.raw, delta).quantize(QUANTUM, rounding=ROUND_DOWN, context=PRECISION)
            if payment is not None:
                group.ephemeral_pubkey = payment.ephemeral_pubkey
                group.memo = payment.memo

        assets = await load_assets(self.repo, (asset_id for asset_id, _ in balances), chain)
        addresses = {address for _, address in balances}
        return assemble_balances(balances.values(), assets, addresses, record_count=len(entries))
