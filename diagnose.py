import sys
import os
import asyncio

# Add project root to path
sys.path.append(os.getcwd())

try:
    import base58
    from stealthpay.api.main import ServiceContainer, app
    from stealthpay.config import APTOS_TESTNET, ChainConfig, Settings
    from stealthpay.core.entities.events import ChainTransactionDetail
    from stealthpay.core.entities.keys import RegisteredViewingKey
    from stealthpay.core.use_cases.stealth_protocol import derive_ephemeral_payment_bundle, derive_meta_keys
    from stealthpay.infrastructure.gateways.local_mock import LocalMockChainReader, payment_event
    from stealthpay.infrastructure.persistence.memory_repo import InMemoryLedgerRepo
    print("✅ All imports successful.")
except Exception as e:
    print(f"❌ Import failed: {e}")
    sys.exit(1)

PROGRAM_ID = "0x" + "5e" * 32


# Index one payment end to end against the in-memory stack
async def check_pipeline():
    try:
        chain = ChainConfig(
            id=APTOS_TESTNET,
            rpc_url="http://localhost/v1",
            public_rpc_url="http://localhost/v1",
            indexer_url="http://localhost/v1/graphql",
            stealth_program_id=PROGRAM_ID,
        )
        settings = Settings(chain_id=APTOS_TESTNET, chains={APTOS_TESTNET: chain}, indexer_batch_pause=0)
        repo = InMemoryLedgerRepo()
        reader = LocalMockChainReader()
        container = ServiceContainer(settings, repo, reader)

        keys = derive_meta_keys("diagnose")
        repo.add_viewing_key(
            RegisteredViewingKey(
                user_id="diagnose-user",
                wallet_id="diagnose-wallet",
                meta_spend_pub=keys.spend.public_key_b58,
                meta_view_pub=keys.view.public_key_b58,
                meta_view_priv=keys.view.private_key_b58,
            )
        )
        bundle = derive_ephemeral_payment_bundle(keys.spend.public_key, keys.view.public_key, note="hello")
        event = payment_event(
            bundle.stealth_address,
            100_000_000,
            base58.b58decode(bundle.ephemeral_pubkey),
            payload=base58.b58decode(bundle.encrypted_ephemeral_key),
            note=bundle.encrypted_note,
        )
        reader.add_transaction(
            PROGRAM_ID,
            ChainTransactionDetail(version=1, sender="0x" + "ab" * 32, timestamp=1_700_000_000_000_000, events=[event]),
        )

        report = await container.indexer.run_cycle()
        balance = await container.balances.get_balance("diagnose-user", APTOS_TESTNET)

        if report.payments_indexed == 1 and balance.tokens and balance.tokens[0].total == 1.0:
            print(f"✅ Pipeline check passed: {balance.tokens[0].total} {balance.tokens[0].symbol} via {balance.source.value}")
        else:
            print(f"❌ Pipeline check failed: indexed {report.payments_indexed}, source {balance.source.value}")
    except Exception as e:
        print(f"❌ Pipeline raised exception: {e}")

if __name__ == "__main__":
    asyncio.run(check_pipeline())
