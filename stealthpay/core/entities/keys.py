"""
Key material entities for the stealth address protocol.

Private keys are 32-byte secp256k1 scalars, public keys are 33-byte
compressed points.
"""
import base58
from pydantic import BaseModel
from typing import Optional


class KeyPair(BaseModel):
    private_key: bytes
    public_key: bytes

    @property
    def public_key_b58(self) -> str:
        return base58.b58encode(self.public_key).decode()

    @property
    def private_key_b58(self) -> str:
        return base58.b58encode(self.private_key).decode()


class MetaKeys(BaseModel):
    """The long-lived identity a recipient publishes (public halves only)."""
    spend: KeyPair
    view: KeyPair

    @property
    def spend_pub_b58(self) -> str:
        return self.spend.public_key_b58

    @property
    def view_pub_b58(self) -> str:
        return self.view.public_key_b58


class EphemeralKeyPair(KeyPair):
    pass


class StealthPublic(BaseModel):
    stealth_pubkey: bytes
    address: str

    @property
    def stealth_pubkey_b58(self) -> str:
        return base58.b58encode(self.stealth_pubkey).decode()


class StealthKeypair(BaseModel):
    private_key: bytes
    public_key: bytes
    address: str


class PaymentBundle(BaseModel):
    """Everything a sender needs to submit one stealth payment."""
    stealth_address: str
    stealth_pubkey: str
    ephemeral_pubkey: str
    encrypted_ephemeral_key: str
    encrypted_label: Optional[bytes] = None
    encrypted_note: Optional[bytes] = None


class RegisteredViewingKey(BaseModel):
    """
    A wallet's meta keys as held by the wallet registry.
    Values are base58 or hex strings.
    """
    user_id: str
    wallet_id: str
    meta_spend_pub: str
    meta_view_pub: str
    meta_view_priv: str
    is_active: bool = True
