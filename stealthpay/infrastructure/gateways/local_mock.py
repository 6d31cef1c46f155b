"""
In-memory chain for local runs and tests. Transactions, holdings and asset
metadata are seeded by the caller.
"""
from typing import Dict, List, Optional, Tuple

from stealthpay.config import NATIVE_APT_ASSET
from stealthpay.core.entities.balance import AccountHoldings, AssetHolding
from stealthpay.core.entities.events import ChainEvent, ChainTransactionDetail, ChainTransactionRef
from stealthpay.core.interfaces.chain_reader import IChainReader


def payment_event(
    stealth_owner: str,
    amount: int,
    ephemeral_pubkey: bytes,
    payload: Optional[bytes] = None,
    label: Optional[bytes] = None,
    note: Optional[bytes] = None,
    fa_metadata: Optional[str] = None,
    event_type: str = "stealth::PaymentEvent"
) -> ChainEvent:
    data = {
        "stealth_owner": stealth_owner,
        "amount": str(amount),
        "eph_pubkey": "0x" + ephemeral_pubkey.hex(),
        "payload": "0x" + payload.hex() if payload else "0x",
        "label": "0x" + label.hex() if label else "0x",
        "note": "0x" + note.hex() if note else "0x",
    }
    if fa_metadata:
        data["fa_metadata"] = {"inner": fa_metadata}
    return ChainEvent(type=event_type, data=data)


def withdraw_event(
    stealth_owner: str,
    destination: str,
    amount: int,
    fa_metadata: Optional[str] = None,
    event_type: str = "stealth::WithdrawEvent"
) -> ChainEvent:
    data = {"stealth_owner": stealth_owner, "destination": destination, "amount": str(amount)}
    if fa_metadata:
        data["fa_metadata"] = {"inner": fa_metadata}
    return ChainEvent(type=event_type, data=data)


class LocalMockChainReader(IChainReader):
    def __init__(self, native_asset: str = NATIVE_APT_ASSET):
        self.native_asset = native_asset
        self.transactions: Dict[int, Tuple[str, ChainTransactionDetail]] = {}
        self.holdings: Dict[str, AccountHoldings] = {}
        self.metadata: Dict[str, dict] = {}
        self.fail_with: Optional[Exception] = None
        self.holdings_calls = 0
        self.detail_requests: List[int] = []

    # --- Seeding ---

    def add_transaction(self, contract_address: str, tx: ChainTransactionDetail):
        self.transactions[tx.version] = (contract_address, tx)

    def set_holdings(self, address: str, native_amount: int = 0, assets: Optional[Dict[str, int]] = None):
        self.holdings[address] = AccountHoldings(
            address=address,
            native_amount=native_amount,
            assets=[AssetHolding(asset_id=a, amount=v) for a, v in (assets or {}).items()],
        )

    def _check_failure(self):
        if self.fail_with is not None:
            raise self.fail_with

    # --- IChainReader ---

    async def fetch_transactions_since(
        self,
        contract_address: str,
        min_version: int,
        limit: int,
        offset: int = 0
    ) -> List[ChainTransactionRef]:
        self._check_failure()
        versions = sorted(
            v for v, (contract, _) in self.transactions.items()
            if contract == contract_address and v > min_version
        )
        return [
            ChainTransactionRef(version=v, sender=self.transactions[v][1].sender)
            for v in versions[offset:offset + limit]
        ]

    async def fetch_transaction_detail(self, version: int) -> Optional[ChainTransactionDetail]:
        self._check_failure()
        self.detail_requests.append(version)
        entry = self.transactions.get(version)
        return entry[1].model_copy(deep=True) if entry else None

    async def fetch_account_holdings(self, address: str) -> AccountHoldings:
        self._check_failure()
        self.holdings_calls += 1
        holdings = self.holdings.get(address)
        if holdings is None:
            return AccountHoldings(address=address)
        return holdings.model_copy(deep=True)

    async def fetch_asset_metadata(self, asset_id: str) -> Optional[dict]:
        self._check_failure()
        metadata = self.metadata.get(asset_id)
        return dict(metadata) if metadata else None
