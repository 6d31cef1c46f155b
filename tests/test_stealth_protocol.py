"""
Tests for the stealth address protocol: key derivation, address agreement
between sender and receiver, and authenticated encryption of the
ephemeral key and notes.
"""
import base58
import pytest

from stealthpay.core.errors import AuthenticityError, PayloadTooLargeError, StealthError
from stealthpay.core.use_cases.stealth_protocol import (
    aptos_address,
    check_payload_sizes,
    decode_key,
    decrypt_ephemeral_priv_key,
    decrypt_note,
    derive_ephemeral_payment_bundle,
    derive_meta_keys,
    derive_stealth_keypair,
    derive_stealth_public,
    derive_stealth_public_from_view,
    encrypt_ephemeral_priv_key,
    encrypt_note,
    generate_ephemeral_key,
    generate_meta_keys,
    normalize_address,
    public_key_from_private,
)


def test_meta_keys_are_deterministic_per_seed():
    first = derive_meta_keys("correct horse battery staple")
    again = derive_meta_keys("correct horse battery staple")
    other = derive_meta_keys("another seed")

    assert first.spend.private_key == again.spend.private_key
    assert first.view.public_key == again.view.public_key
    assert first.spend.private_key != other.spend.private_key
    assert first.spend.private_key != first.view.private_key
    assert len(first.spend.public_key) == 33


def test_sender_and_receiver_agree_on_stealth_address():
    meta = generate_meta_keys()
    ephemeral = generate_ephemeral_key()

    sent = derive_stealth_public(meta.spend.public_key, meta.view.public_key, ephemeral.private_key)
    scanned = derive_stealth_public_from_view(meta.spend.public_key, meta.view.private_key, ephemeral.public_key)
    spendable = derive_stealth_keypair(meta.spend.private_key, meta.view.private_key, ephemeral.public_key)

    assert sent.address == scanned.address == spendable.address
    assert spendable.public_key == sent.stealth_pubkey
    assert public_key_from_private(spendable.private_key) == sent.stealth_pubkey
    assert aptos_address(sent.stealth_pubkey) == sent.address


def test_ephemeral_key_round_trip():
    meta = generate_meta_keys()
    ephemeral = generate_ephemeral_key()

    payload = encrypt_ephemeral_priv_key(ephemeral.private_key, meta.view.public_key)
    recovered = decrypt_ephemeral_priv_key(payload, meta.view.private_key, ephemeral.public_key)

    assert recovered == ephemeral.private_key


def test_ephemeral_key_for_another_view_key_fails_authentication():
    meta = generate_meta_keys()
    stranger = generate_meta_keys()
    ephemeral = generate_ephemeral_key()

    payload = encrypt_ephemeral_priv_key(ephemeral.private_key, meta.view.public_key)

    with pytest.raises(AuthenticityError):
        decrypt_ephemeral_priv_key(payload, stranger.view.private_key, ephemeral.public_key)


def test_tampered_ephemeral_payload_fails_authentication():
    meta = generate_meta_keys()
    ephemeral = generate_ephemeral_key()
    raw = bytearray(base58.b58decode(encrypt_ephemeral_priv_key(ephemeral.private_key, meta.view.public_key)))
    raw[20] ^= 0x01

    with pytest.raises(AuthenticityError):
        decrypt_ephemeral_priv_key(bytes(raw), meta.view.private_key, ephemeral.public_key)


def test_short_payload_is_rejected_before_decryption():
    meta = generate_meta_keys()
    ephemeral = generate_ephemeral_key()

    with pytest.raises(StealthError) as excinfo:
        decrypt_ephemeral_priv_key(b"\x00" * 27, meta.view.private_key, ephemeral.public_key)
    assert not isinstance(excinfo.value, AuthenticityError)


def test_note_round_trip_and_wrong_key():
    meta = generate_meta_keys()
    stranger = generate_meta_keys()
    ephemeral = generate_ephemeral_key()

    encrypted = encrypt_note("rent for march", ephemeral.private_key, meta.view.public_key)

    assert decrypt_note(encrypted, ephemeral.public_key, meta.view.private_key) == "rent for march"
    with pytest.raises(AuthenticityError):
        decrypt_note(encrypted, ephemeral.public_key, stranger.view.private_key)


def test_payment_bundle_is_recoverable_by_recipient():
    meta = derive_meta_keys("recipient")
    bundle = derive_ephemeral_payment_bundle(meta.spend.public_key, meta.view.public_key, label="shop", note="order 42")

    eph_priv = decrypt_ephemeral_priv_key(bundle.encrypted_ephemeral_key, meta.view.private_key, bundle.ephemeral_pubkey)
    keypair = derive_stealth_keypair(meta.spend.private_key, meta.view.private_key, bundle.ephemeral_pubkey)

    assert public_key_from_private(eph_priv) == base58.b58decode(bundle.ephemeral_pubkey)
    assert keypair.address == bundle.stealth_address
    assert decrypt_note(bundle.encrypted_label, bundle.ephemeral_pubkey, meta.view.private_key) == "shop"
    assert decrypt_note(bundle.encrypted_note, bundle.ephemeral_pubkey, meta.view.private_key) == "order 42"


def test_payment_bundle_without_label_or_note():
    meta = generate_meta_keys()
    bundle = derive_ephemeral_payment_bundle(meta.spend.public_key, meta.view.public_key)

    assert bundle.encrypted_label is None
    assert bundle.encrypted_note is None


def test_oversized_note_is_rejected():
    meta = generate_meta_keys()

    with pytest.raises(PayloadTooLargeError) as excinfo:
        derive_ephemeral_payment_bundle(meta.spend.public_key, meta.view.public_key, note="x" * 300)
    assert excinfo.value.field == "note"


def test_payload_size_limits():
    check_payload_sizes(b"\x00" * 121, b"\x00" * 256, b"\x00" * 256)
    with pytest.raises(PayloadTooLargeError):
        check_payload_sizes(b"\x00" * 122)
    with pytest.raises(PayloadTooLargeError):
        check_payload_sizes(b"\x00" * 93, label=b"\x00" * 257)


def test_key_decoding_accepts_hex_and_base58():
    meta = generate_meta_keys()
    pub = meta.spend.public_key

    assert decode_key("0x" + pub.hex()) == pub
    assert decode_key(pub.hex()) == pub
    assert decode_key(base58.b58encode(pub).decode()) == pub
    with pytest.raises(StealthError):
        decode_key("not a key!")


def test_invalid_public_key_is_rejected():
    ephemeral = generate_ephemeral_key()
    with pytest.raises(StealthError):
        derive_stealth_public(b"\x02" * 20, b"\x03" * 20, ephemeral.private_key)


def test_normalize_address_pads_to_long_form():
    assert normalize_address("0x1") == "0x" + "0" * 63 + "1"
    assert normalize_address("0xABC") == "0x" + "0" * 61 + "abc"
