"""
Indexed ledger records: payments into stealth addresses, withdrawals out of
them, and reconciliation adjustments.

Amounts are raw integer base units of the asset.
"""
from datetime import datetime
from pydantic import BaseModel
from typing import Optional, Tuple


class IndexedPayment(BaseModel):
    id: Optional[int] = None
    chain: str
    tx_id: str
    version: int
    event_index: int
    timestamp: int  # unix seconds
    stealth_owner: str
    ephemeral_pubkey: str
    payer: Optional[str] = None
    asset_id: str
    amount: int
    encrypted_label: Optional[str] = None
    memo: Optional[str] = None
    encrypted_note: Optional[str] = None
    label: Optional[str] = None
    note: Optional[str] = None
    link_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    payer_user_id: Optional[str] = None
    announce: bool = True

    @property
    def natural_key(self) -> Tuple[str, str, int, str, str, str]:
        return (
            self.chain,
            self.tx_id,
            self.event_index,
            self.stealth_owner,
            self.ephemeral_pubkey,
            self.asset_id,
        )


class IndexedWithdrawal(BaseModel):
    id: Optional[int] = None
    chain: str
    tx_id: str
    version: int
    timestamp: int
    stealth_owner: str
    destination: str
    asset_id: str
    amount: int
    amount_after_fee: Optional[int] = None
    user_id: Optional[str] = None
    destination_user_id: Optional[str] = None
    is_internal_transfer: bool = False
    is_processed: bool = False

    @property
    def natural_key(self) -> Tuple[str, str, str, str]:
        return (self.chain, self.tx_id, self.stealth_owner, self.asset_id)

    @property
    def effective_amount(self) -> int:
        if self.amount_after_fee is not None:
            return self.amount_after_fee
        return self.amount


class BalanceAdjustment(BaseModel):
    chain: str
    stealth_owner: str
    asset_id: str
    user_id: str
    adjustment_amount: int  # signed
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.stealth_owner, self.chain, self.asset_id, self.user_id)


class LinkRef(BaseModel):
    link_id: str
    user_id: str
    label: Optional[str] = None


class AddressActivity(BaseModel):
    """Latest activity seen for a stealth address and the user owning it."""
    address: str
    user_id: str
    last_activity: int
    activity_count: int = 1
