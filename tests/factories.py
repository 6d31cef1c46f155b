"""
Builders for wallets and chain transactions used across the test suite.
"""
from typing import Optional, Tuple

import base58

from stealthpay.core.entities.events import ChainTransactionDetail
from stealthpay.core.entities.keys import MetaKeys, PaymentBundle, RegisteredViewingKey
from stealthpay.core.use_cases.stealth_protocol import derive_ephemeral_payment_bundle, derive_meta_keys
from stealthpay.infrastructure.gateways.local_mock import payment_event, withdraw_event

PROGRAM_ID = "0x" + "5e" * 32
PAYER = "0x" + "ab" * 32
EXTERNAL = "0x" + "cd" * 32
BASE_TIME = 1_700_000_000


def make_wallet(user_id: str, seed: Optional[str] = None) -> Tuple[MetaKeys, RegisteredViewingKey]:
    keys = derive_meta_keys(seed or f"seed-{user_id}")
    registered = RegisteredViewingKey(
        user_id=user_id,
        wallet_id=f"wallet-{user_id}",
        meta_spend_pub=keys.spend.public_key_b58,
        meta_view_pub=keys.view.public_key_b58,
        meta_view_priv=keys.view.private_key_b58,
    )
    return keys, registered


def make_bundle(keys: MetaKeys, label: Optional[str] = None, note: Optional[str] = None) -> PaymentBundle:
    return derive_ephemeral_payment_bundle(keys.spend.public_key, keys.view.public_key, label=label, note=note)


def payment_tx(
    version: int,
    bundle: PaymentBundle,
    amount: int,
    sender: str = PAYER,
    timestamp: int = BASE_TIME,
    fa_metadata: Optional[str] = None,
    with_memo: bool = True
) -> ChainTransactionDetail:
    event = payment_event(
        stealth_owner=bundle.stealth_address,
        amount=amount,
        ephemeral_pubkey=base58.b58decode(bundle.ephemeral_pubkey),
        payload=base58.b58decode(bundle.encrypted_ephemeral_key) if with_memo else None,
        label=bundle.encrypted_label,
        note=bundle.encrypted_note,
        fa_metadata=fa_metadata,
    )
    return ChainTransactionDetail(
        version=version,
        hash=f"0xhash{version}",
        sender=sender,
        timestamp=timestamp * 1_000_000,
        events=[event],
    )


def withdraw_tx(
    version: int,
    stealth_owner: str,
    amount: int,
    destination: str = EXTERNAL,
    timestamp: int = BASE_TIME + 60
) -> ChainTransactionDetail:
    return ChainTransactionDetail(
        version=version,
        hash=f"0xhash{version}",
        sender=stealth_owner,
        timestamp=timestamp * 1_000_000,
        events=[withdraw_event(stealth_owner, destination, amount)],
    )
