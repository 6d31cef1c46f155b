"""
Stealth address protocol over secp256k1 for Aptos SingleKey accounts.

A recipient publishes a spend public key and a view public key. A sender
picks an ephemeral key e and pays to

    P = spend_pub + H(x(e * view_pub)) * G

The recipient recognises the payment with the view private key and spends
it with d = spend_priv + H(x(view_priv * E)) mod n.

The ephemeral private key travels on chain encrypted to the view key
(ChaCha20-Poly1305, key from HKDF-SHA256 over the ECDH x-coordinate), so
only the holder of the view private key can recover it.
"""
import hashlib
import logging
import os
import re
from typing import Optional, Union

import base58
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.ellipticcurve import INFINITY
from ecdsa.errors import MalformedPointError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from stealthpay.core.entities.keys import (
    KeyPair,
    MetaKeys,
    EphemeralKeyPair,
    StealthPublic,
    StealthKeypair,
    PaymentBundle,
)
from stealthpay.core.errors import StealthError, AuthenticityError, PayloadTooLargeError

logger = logging.getLogger(__name__)

CURVE = SECP256k1
N = SECP256k1.order
G = SECP256k1.generator

# Derivation contexts are part of the wire format; changing them changes every key.
SPEND_CONTEXT = b"PIVY Spend Authority | Deterministic Derivation"
VIEW_CONTEXT = b"PIVY View Authority | Deterministic Derivation"
APTOS_DOMAIN = b"PIVY | Deterministic Meta Keys | Aptos Network"

EPHEMERAL_KEY_INFO = b"ephemeral-key-encryption"
NOTE_INFO = b"memo-encryption"

NONCE_SIZE = 12
TAG_SIZE = 16
MIN_CIPHERTEXT_SIZE = NONCE_SIZE + TAG_SIZE

MAX_PAYLOAD_BYTES = 121
MAX_LABEL_BYTES = 256
MAX_NOTE_BYTES = 256

KeyInput = Union[bytes, bytearray, str]

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


# --- Encoding helpers ---

def decode_key(raw: KeyInput) -> bytes:
    """
    Accepts raw bytes, hex (with or without 0x) or base58.
    Unprefixed hex is only recognised at 32 or 33 bytes of length.
    """
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if not isinstance(raw, str) or not raw:
        raise StealthError("Unsupported key format; expected bytes, hex or base58")

    if raw.startswith("0x"):
        try:
            return bytes.fromhex(raw[2:])
        except ValueError as e:
            raise StealthError(f"Invalid hex key: {e}")

    if _HEX_RE.match(raw) and len(raw) in (64, 66):
        return bytes.fromhex(raw)

    try:
        return base58.b58decode(raw)
    except ValueError as e:
        raise StealthError(f"Invalid base58 key: {e}")


def b58(data: bytes) -> str:
    return base58.b58encode(data).decode()


def _scalar(raw: KeyInput) -> int:
    data = decode_key(raw)
    if len(data) != 32:
        raise StealthError(f"Private key must be 32 bytes, got {len(data)}")
    k = int.from_bytes(data, "big") % N
    if k == 0:
        raise StealthError("Private key is zero modulo the curve order")
    return k


def _scalar_bytes(k: int) -> bytes:
    return k.to_bytes(32, "big")


def _point(raw: KeyInput):
    data = decode_key(raw)
    if len(data) != 33:
        raise StealthError(f"Public key must be 33 bytes compressed, got {len(data)}")
    try:
        return VerifyingKey.from_string(data, curve=CURVE).pubkey.point
    except (MalformedPointError, ValueError) as e:
        raise StealthError(f"Invalid secp256k1 point: {e}")


def _compress(point) -> bytes:
    x, y = point.x(), point.y()
    return bytes([2 + (y & 1)]) + x.to_bytes(32, "big")


def _uncompress(point) -> bytes:
    return b"\x04" + point.x().to_bytes(32, "big") + point.y().to_bytes(32, "big")


def public_key_from_private(private_key: KeyInput) -> bytes:
    return _compress(G * _scalar(private_key))


def _random_scalar() -> int:
    while True:
        k = int.from_bytes(os.urandom(32), "big")
        if 0 < k < N:
            return k


def _keypair(k: int) -> KeyPair:
    return KeyPair(private_key=_scalar_bytes(k), public_key=_compress(G * k))


# --- Addresses ---

def normalize_address(address: str) -> str:
    """Lowercase long form: 0x followed by 64 hex characters."""
    hex_part = address[2:] if address.startswith("0x") else address
    return "0x" + hex_part.lower().rjust(64, "0")


def aptos_address(public_key: KeyInput) -> str:
    """
    Aptos account address of a SingleKey secp256k1 account:
    sha3_256(0x01 || 0x41 || uncompressed65 || 0x02).
    """
    uncompressed = _uncompress(_point(public_key))
    auth_key_input = b"\x01\x41" + uncompressed + b"\x02"
    return "0x" + hashlib.sha3_256(auth_key_input).hexdigest()


# --- Meta and ephemeral keys ---

def _hkdf(ikm: bytes, salt: bytes, info: bytes, length: int = 32) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(ikm)


def derive_meta_keys(seed: str) -> MetaKeys:
    """Deterministic: the same seed always yields the same meta keys."""
    seed_bytes = seed.encode("utf-8")
    spend = int.from_bytes(_hkdf(seed_bytes, APTOS_DOMAIN, SPEND_CONTEXT), "big") % N
    view = int.from_bytes(_hkdf(seed_bytes, APTOS_DOMAIN, VIEW_CONTEXT), "big") % N
    if spend == 0 or view == 0:
        raise StealthError("Seed derived a zero scalar")
    return MetaKeys(spend=_keypair(spend), view=_keypair(view))


def generate_meta_keys() -> MetaKeys:
    return MetaKeys(spend=_keypair(_random_scalar()), view=_keypair(_random_scalar()))


def generate_ephemeral_key() -> EphemeralKeyPair:
    k = _random_scalar()
    return EphemeralKeyPair(private_key=_scalar_bytes(k), public_key=_compress(G * k))


# --- Stealth derivation ---

def _shared_x(k: int, point) -> bytes:
    shared = point * k
    if shared == INFINITY:
        raise StealthError("ECDH produced the point at infinity")
    return shared.x().to_bytes(32, "big")


def _tweak(shared_x: bytes) -> int:
    return int.from_bytes(hashlib.sha256(shared_x).digest(), "big") % N


def _stealth_from_tweak(spend_pub: KeyInput, tweak: int) -> StealthPublic:
    stealth_point = _point(spend_pub) + G * tweak
    if stealth_point == INFINITY:
        raise StealthError("Stealth point is the point at infinity")
    pub = _compress(stealth_point)
    return StealthPublic(stealth_pubkey=pub, address=aptos_address(pub))


def derive_stealth_public(spend_pub: KeyInput, view_pub: KeyInput, ephemeral_priv: KeyInput) -> StealthPublic:
    """Sender side: needs only the recipient's public meta keys."""
    tweak = _tweak(_shared_x(_scalar(ephemeral_priv), _point(view_pub)))
    return _stealth_from_tweak(spend_pub, tweak)


def derive_stealth_public_from_view(spend_pub: KeyInput, view_priv: KeyInput, ephemeral_pub: KeyInput) -> StealthPublic:
    """Receiver side without the spend secret, for scanning."""
    tweak = _tweak(_shared_x(_scalar(view_priv), _point(ephemeral_pub)))
    return _stealth_from_tweak(spend_pub, tweak)


def derive_stealth_keypair(spend_priv: KeyInput, view_priv: KeyInput, ephemeral_pub: KeyInput) -> StealthKeypair:
    tweak = _tweak(_shared_x(_scalar(view_priv), _point(ephemeral_pub)))
    d = (_scalar(spend_priv) + tweak) % N
    if d == 0:
        raise StealthError("Stealth private key is zero")
    pub = _compress(G * d)
    return StealthKeypair(private_key=_scalar_bytes(d), public_key=pub, address=aptos_address(pub))


# --- Encryption ---

def _aead_key(shared_x: bytes, ephemeral_pub: bytes, info: bytes) -> bytes:
    return _hkdf(shared_x, hashlib.sha256(ephemeral_pub).digest(), info)


def _seal(key: bytes, plaintext: bytes) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    return nonce + ChaCha20Poly1305(key).encrypt(nonce, plaintext, None)


def _open(key: bytes, payload: bytes) -> bytes:
    if len(payload) < MIN_CIPHERTEXT_SIZE:
        raise StealthError("Encrypted payload too short")
    try:
        return ChaCha20Poly1305(key).decrypt(payload[:NONCE_SIZE], payload[NONCE_SIZE:], None)
    except InvalidTag:
        raise AuthenticityError("Ciphertext failed authentication")


def _payload_bytes(payload: KeyInput) -> bytes:
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    try:
        return base58.b58decode(payload)
    except ValueError as e:
        raise StealthError(f"Invalid base58 payload: {e}")


def encrypt_ephemeral_priv_key(ephemeral_priv: KeyInput, view_pub: KeyInput) -> str:
    """Returns base58(nonce || ciphertext || tag) of eph_priv || eph_pub."""
    k = _scalar(ephemeral_priv)
    eph_pub = _compress(G * k)
    key = _aead_key(_shared_x(k, _point(view_pub)), eph_pub, EPHEMERAL_KEY_INFO)
    return b58(_seal(key, _scalar_bytes(k) + eph_pub))


def decrypt_ephemeral_priv_key(payload: KeyInput, view_priv: KeyInput, ephemeral_pub: KeyInput) -> bytes:
    eph_pub = decode_key(ephemeral_pub)
    key = _aead_key(_shared_x(_scalar(view_priv), _point(eph_pub)), eph_pub, EPHEMERAL_KEY_INFO)
    plaintext = _open(key, _payload_bytes(payload))
    if len(plaintext) != 65:
        raise AuthenticityError("Ephemeral key plaintext has the wrong length")

    eph_priv, embedded_pub = plaintext[:32], plaintext[32:]
    if public_key_from_private(eph_priv) != embedded_pub or embedded_pub != eph_pub:
        raise AuthenticityError("Ephemeral public key mismatch")
    return eph_priv


def encrypt_note(plaintext: str, ephemeral_priv: KeyInput, view_pub: KeyInput) -> bytes:
    k = _scalar(ephemeral_priv)
    eph_pub = _compress(G * k)
    key = _aead_key(_shared_x(k, _point(view_pub)), eph_pub, NOTE_INFO)
    return _seal(key, plaintext.encode("utf-8"))


def decrypt_note(encrypted: KeyInput, ephemeral_pub: KeyInput, view_priv: KeyInput) -> str:
    eph_pub = decode_key(ephemeral_pub)
    key = _aead_key(_shared_x(_scalar(view_priv), _point(eph_pub)), eph_pub, NOTE_INFO)
    try:
        return _open(key, _payload_bytes(encrypted)).decode("utf-8")
    except UnicodeDecodeError:
        raise StealthError("Note is not valid UTF-8")


# --- Sender bundle ---

def check_payload_sizes(payload: bytes, label: Optional[bytes] = None, note: Optional[bytes] = None) -> None:
    if len(payload) > MAX_PAYLOAD_BYTES:
        raise PayloadTooLargeError("payload", len(payload), MAX_PAYLOAD_BYTES)
    if label is not None and len(label) > MAX_LABEL_BYTES:
        raise PayloadTooLargeError("label", len(label), MAX_LABEL_BYTES)
    if note is not None and len(note) > MAX_NOTE_BYTES:
        raise PayloadTooLargeError("note", len(note), MAX_NOTE_BYTES)


def derive_ephemeral_payment_bundle(
    spend_pub: KeyInput,
    view_pub: KeyInput,
    label: Optional[str] = None,
    note: Optional[str] = None
) -> PaymentBundle:
    """
    Builds everything a sender submits for one payment. Size ceilings are
    enforced here so an oversized bundle never reaches the chain.
    """
    ephemeral = generate_ephemeral_key()
    stealth = derive_stealth_public(spend_pub, view_pub, ephemeral.private_key)
    encrypted_key = encrypt_ephemeral_priv_key(ephemeral.private_key, view_pub)

    encrypted_label = encrypt_note(label, ephemeral.private_key, view_pub) if label else None
    encrypted_note = encrypt_note(note, ephemeral.private_key, view_pub) if note else None

    check_payload_sizes(base58.b58decode(encrypted_key), encrypted_label, encrypted_note)

    return PaymentBundle(
        stealth_address=stealth.address,
        stealth_pubkey=stealth.stealth_pubkey_b58,
        ephemeral_pubkey=b58(ephemeral.public_key),
        encrypted_ephemeral_key=encrypted_key,
        encrypted_label=encrypted_label,
        encrypted_note=encrypted_note,
    )
