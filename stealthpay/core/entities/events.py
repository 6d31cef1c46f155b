"""
Raw chain transaction shapes and the parsed stealth program events.

Parsed events form a closed set discriminated by ``kind``; anything the
parser does not recognise becomes an ``UnknownEvent``.
"""
from pydantic import BaseModel, Field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union


class ChainTransactionRef(BaseModel):
    version: int
    sender: Optional[str] = None
    entry_function: Optional[str] = None


class ChainEvent(BaseModel):
    type: str
    data: Dict[str, Any] = {}


class ChainTransactionDetail(BaseModel):
    version: int
    hash: Optional[str] = None
    type: str = "user_transaction"
    success: bool = True
    sender: Optional[str] = None
    timestamp: int  # microseconds
    events: List[ChainEvent] = []


class PaymentEvent(BaseModel):
    kind: Literal["payment"] = "payment"
    tx_id: str
    version: int
    event_index: int
    timestamp: int
    stealth_owner: str
    payer: Optional[str] = None
    asset_id: str
    amount: int
    ephemeral_pubkey: str
    memo: Optional[str] = None
    encrypted_label: Optional[str] = None
    encrypted_note: Optional[str] = None


class WithdrawalEvent(BaseModel):
    kind: Literal["withdrawal"] = "withdrawal"
    tx_id: str
    version: int
    event_index: int
    timestamp: int
    stealth_owner: str
    destination: str
    asset_id: str
    amount: int


class UnknownEvent(BaseModel):
    kind: Literal["unknown"] = "unknown"
    tx_id: str
    event_index: int
    event_type: str


ParsedEvent = Annotated[
    Union[PaymentEvent, WithdrawalEvent, UnknownEvent],
    Field(discriminator="kind"),
]
