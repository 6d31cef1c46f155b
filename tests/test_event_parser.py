import base58
import pytest

from stealthpay.config import NATIVE_APT_ASSET, USDC_ASSET
from stealthpay.core.entities.events import ChainEvent, ChainTransactionDetail, PaymentEvent, UnknownEvent, WithdrawalEvent
from stealthpay.core.errors import EventDecodeError
from stealthpay.core.use_cases.event_parser import bytes_to_base58, extract_asset_id, parse_transaction

OWNER = "0x" + "11" * 32
PAYER = "0x" + "22" * 32


def _tx(*events, success=True, tx_type="user_transaction", sender=PAYER) -> ChainTransactionDetail:
    return ChainTransactionDetail(
        version=42,
        sender=sender,
        type=tx_type,
        success=success,
        timestamp=1_700_000_123_456_789,
        events=list(events),
    )


def _payment(**overrides) -> ChainEvent:
    data = {"stealth_owner": OWNER, "amount": "500000", "eph_pubkey": "0x02" + "aa" * 32, "payload": "0x"}
    data.update(overrides)
    return ChainEvent(type="0xprog::stealth::PaymentEvent", data=data)


def test_bytes_to_base58_handles_hex_and_integer_lists():
    assert bytes_to_base58("0x0102") == base58.b58encode(b"\x01\x02").decode()
    assert bytes_to_base58([1, 2]) == base58.b58encode(b"\x01\x02").decode()
    assert bytes_to_base58("0x") is None
    assert bytes_to_base58([]) is None
    assert bytes_to_base58(None) is None
    with pytest.raises(EventDecodeError):
        bytes_to_base58("0xzz")


def test_asset_id_resolution():
    assert extract_asset_id("x::stealth::PaymentEvent", {"fa_metadata": {"inner": USDC_ASSET}}) == USDC_ASSET
    assert extract_asset_id("x::stealth::PaymentEvent", {"fa_metadata": USDC_ASSET}) == USDC_ASSET
    assert extract_asset_id("x::stealth::LegacyPaymentEvent<0x1::coin::Foo>", {}) == "0x1::coin::Foo"
    assert extract_asset_id("x::stealth::PaymentEvent", {}) == NATIVE_APT_ASSET


def test_payment_event_is_parsed():
    [event] = parse_transaction(_tx(_payment()))

    assert isinstance(event, PaymentEvent)
    assert event.tx_id == "42"
    assert event.event_index == 0
    assert event.timestamp == 1_700_000_123
    assert event.stealth_owner == OWNER
    assert event.payer == PAYER
    assert event.amount == 500000
    assert event.asset_id == NATIVE_APT_ASSET
    assert event.ephemeral_pubkey == base58.b58encode(bytes.fromhex("02" + "aa" * 32)).decode()
    assert event.memo is None


def test_withdraw_and_unknown_events():
    withdraw = ChainEvent(
        type="0xprog::stealth::WithdrawEvent",
        data={"stealth_owner": OWNER, "destination": "0x3", "amount": "7"},
    )
    other = ChainEvent(type="0x1::fungible_asset::Deposit", data={})

    parsed = parse_transaction(_tx(withdraw, other))

    assert isinstance(parsed[0], WithdrawalEvent)
    assert parsed[0].destination == "0x" + "0" * 63 + "3"
    assert isinstance(parsed[1], UnknownEvent)
    assert parsed[1].event_index == 1


def test_malformed_event_is_skipped_and_siblings_survive():
    parsed = parse_transaction(_tx(_payment(amount="-5"), _payment(stealth_owner="nope"), _payment()))

    assert len(parsed) == 1
    assert parsed[0].event_index == 2


def test_failed_or_non_user_transactions_are_ignored():
    assert parse_transaction(_tx(_payment(), success=False)) == []
    assert parse_transaction(_tx(_payment(), tx_type="block_metadata_transaction")) == []
