"""
Pytest configuration and shared fixtures.
"""
import pytest
from httpx import AsyncClient, ASGITransport

from stealthpay.api.main import ServiceContainer, app
from stealthpay.config import APTOS_TESTNET, ChainConfig, LedgerSettings, Settings
from stealthpay.infrastructure.gateways.local_mock import LocalMockChainReader
from stealthpay.infrastructure.persistence.memory_repo import InMemoryLedgerRepo
from factories import PROGRAM_ID


@pytest.fixture
def settings() -> Settings:
    chain = ChainConfig(
        id=APTOS_TESTNET,
        rpc_url="http://fullnode.test/v1",
        public_rpc_url="http://fullnode.test/v1",
        indexer_url="http://indexer.test/v1/graphql",
        stealth_program_id=PROGRAM_ID,
    )
    return Settings(
        chain_id=APTOS_TESTNET,
        chains={APTOS_TESTNET: chain},
        indexer_batch_size=2,
        indexer_batch_pause=0,
        rpc_min_interval_ms=0,
        ledger=LedgerSettings(),
    )


@pytest.fixture
def repo() -> InMemoryLedgerRepo:
    return InMemoryLedgerRepo()


@pytest.fixture
def reader() -> LocalMockChainReader:
    return LocalMockChainReader()


@pytest.fixture
def container(settings, repo, reader) -> ServiceContainer:
    return ServiceContainer(settings, repo, reader)


@pytest.fixture
async def client(container):
    """Async HTTP client for testing FastAPI endpoints."""
    app.state.container = container
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.container = None
