"""
Ownership attribution by trial decryption.

A payment is tried against every registered viewing key in turn; the first
key that reproduces the payment's stealth address owns it. The scan is
O(events x keys).
"""
import logging
from typing import List, Optional, Protocol

from pydantic import BaseModel

from stealthpay.core.entities.keys import RegisteredViewingKey
from stealthpay.core.errors import StealthError, AuthenticityError
from stealthpay.core.use_cases.stealth_protocol import (
    decrypt_ephemeral_priv_key,
    decrypt_note,
    derive_stealth_public,
    derive_stealth_public_from_view,
    normalize_address,
)

logger = logging.getLogger(__name__)


class StealthPaymentLike(Protocol):
    stealth_owner: str
    ephemeral_pubkey: str
    memo: Optional[str]
    encrypted_label: Optional[str]
    encrypted_note: Optional[str]


class OwnershipMatch(BaseModel):
    user_id: str
    wallet_id: str
    label: Optional[str] = None
    note: Optional[str] = None


def matches_viewing_key(payment: StealthPaymentLike, key: RegisteredViewingKey) -> bool:
    """
    With a memo, the ephemeral private key is recovered and the address
    derived sender-side. Without one, the view private key derives it
    directly. Raises AuthenticityError when the memo is not for this key.
    """
    if payment.memo:
        ephemeral_priv = decrypt_ephemeral_priv_key(payment.memo, key.meta_view_priv, payment.ephemeral_pubkey)
        candidate = derive_stealth_public(key.meta_spend_pub, key.meta_view_pub, ephemeral_priv)
    else:
        candidate = derive_stealth_public_from_view(key.meta_spend_pub, key.meta_view_priv, payment.ephemeral_pubkey)
    return candidate.address == normalize_address(payment.stealth_owner)


def _try_decrypt(ciphertext: Optional[str], payment: StealthPaymentLike, key: RegisteredViewingKey, field: str) -> Optional[str]:
    if not ciphertext:
        return None
    try:
        return decrypt_note(ciphertext, payment.ephemeral_pubkey, key.meta_view_priv)
    except StealthError as e:
        logger.info(f"Could not decrypt {field} for {payment.stealth_owner}: {e}")
        return None


def resolve_ownership(payment: StealthPaymentLike, registered_keys: List[RegisteredViewingKey]) -> Optional[OwnershipMatch]:
    for key in registered_keys:
        if not key.is_active:
            continue
        try:
            if not matches_viewing_key(payment, key):
                continue
        except AuthenticityError:
            continue
        except StealthError as e:
            logger.warning(f"Attribution check failed for wallet {key.wallet_id}: {e}")
            continue

        return OwnershipMatch(
            user_id=key.user_id,
            wallet_id=key.wallet_id,
            label=_try_decrypt(payment.encrypted_label, payment, key, "label"),
            note=_try_decrypt(payment.encrypted_note, payment, key, "note"),
        )

    return None
