import re
import logging
from typing import Any, List, Optional

import base58

from stealthpay.config import NATIVE_APT_ASSET
from stealthpay.core.entities.events import (
    ChainTransactionDetail,
    ChainEvent,
    ParsedEvent,
    PaymentEvent,
    WithdrawalEvent,
    UnknownEvent,
)
from stealthpay.core.errors import EventDecodeError
from stealthpay.core.use_cases.stealth_protocol import normalize_address

logger = logging.getLogger(__name__)

_GENERIC_RE = re.compile(r"<(.+?)>")
_HEX_ADDRESS_RE = re.compile(r"^(0x)?[0-9a-fA-F]{1,64}$")


def bytes_to_base58(value: Any) -> Optional[str]:
    """
    Move `vector<u8>` fields arrive as 0x-hex from the REST API and as
    integer lists from the indexer. Empty input maps to None.
    """
    if value is None or value == "" or value == []:
        return None
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith("0x") else value
        if not hex_str:
            return None
        try:
            raw = bytes.fromhex(hex_str)
        except ValueError:
            raise EventDecodeError(f"Byte field is not hex: {value[:20]}")
        return base58.b58encode(raw).decode()
    if isinstance(value, list):
        try:
            raw = bytes(b for b in value if isinstance(b, int))
        except ValueError:
            raise EventDecodeError("Byte array value out of range")
        return base58.b58encode(raw).decode() if raw else None
    raise EventDecodeError(f"Unsupported byte field type: {type(value).__name__}")


def extract_asset_id(event_type: str, data: dict, native_asset: str = NATIVE_APT_ASSET) -> str:
    fa_metadata = data.get("fa_metadata")
    if isinstance(fa_metadata, dict):
        fa_metadata = fa_metadata.get("inner")
    if fa_metadata:
        return fa_metadata

    if "LegacyPaymentEvent" in event_type or "LegacyWithdrawEvent" in event_type:
        match = _GENERIC_RE.search(event_type)
        if match:
            return match.group(1)

    return native_asset


def _address(value: Any) -> str:
    if not isinstance(value, str) or not _HEX_ADDRESS_RE.match(value):
        raise EventDecodeError(f"Invalid address: {value!r}")
    return normalize_address(value)


def _amount(data: dict) -> int:
    try:
        amount = int(data.get("amount"))
    except (TypeError, ValueError):
        raise EventDecodeError(f"Invalid amount: {data.get('amount')!r}")
    if amount < 0:
        raise EventDecodeError(f"Negative amount: {amount}")
    return amount


def parse_event(
    tx: ChainTransactionDetail,
    event_index: int,
    event: ChainEvent,
    native_asset: str = NATIVE_APT_ASSET
) -> ParsedEvent:
    """Raises EventDecodeError when a recognised event carries bad fields."""
    tx_id = str(tx.version)
    timestamp = tx.timestamp // 1_000_000
    data = event.data or {}

    if "PaymentEvent" in event.type:
        if not data.get("stealth_owner") or not data.get("eph_pubkey"):
            raise EventDecodeError("Payment event missing stealth_owner or eph_pubkey")
        ephemeral_pubkey = bytes_to_base58(data["eph_pubkey"])
        if not ephemeral_pubkey:
            raise EventDecodeError("Payment event has an empty eph_pubkey")
        return PaymentEvent(
            tx_id=tx_id,
            version=tx.version,
            event_index=event_index,
            timestamp=timestamp,
            stealth_owner=_address(data["stealth_owner"]),
            payer=_address(tx.sender) if tx.sender else None,
            asset_id=extract_asset_id(event.type, data, native_asset),
            amount=_amount(data),
            ephemeral_pubkey=ephemeral_pubkey,
            memo=bytes_to_base58(data.get("payload")),
            encrypted_label=bytes_to_base58(data.get("label")),
            encrypted_note=bytes_to_base58(data.get("note")),
        )

    if "WithdrawEvent" in event.type:
        if not data.get("stealth_owner") or not data.get("destination"):
            raise EventDecodeError("Withdraw event missing stealth_owner or destination")
        return WithdrawalEvent(
            tx_id=tx_id,
            version=tx.version,
            event_index=event_index,
            timestamp=timestamp,
            stealth_owner=_address(data["stealth_owner"]),
            destination=_address(data["destination"]),
            asset_id=extract_asset_id(event.type, data, native_asset),
            amount=_amount(data),
        )

    return UnknownEvent(tx_id=tx_id, event_index=event_index, event_type=event.type)


def parse_transaction(tx: ChainTransactionDetail, native_asset: str = NATIVE_APT_ASSET) -> List[ParsedEvent]:
    """
    Parses every event of a successful user transaction. Malformed events
    are logged and dropped; other events in the same transaction survive.
    """
    if not tx.success or tx.type != "user_transaction":
        return []

    parsed: List[ParsedEvent] = []
    for index, event in enumerate(tx.events):
        try:
            parsed.append(parse_event(tx, index, event, native_asset))
        except EventDecodeError as e:
            logger.warning(f"Skipping malformed event {tx.version}#{index}: {e}")
    return parsed
