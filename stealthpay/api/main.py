import logging
import re
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from stealthpay.config import Settings, get_settings
from stealthpay.core.entities.balance import AddressBalanceResponse, BalanceResponse, CacheStats
from stealthpay.core.interfaces.cache import IHotCache
from stealthpay.core.interfaces.chain_reader import IChainReader
from stealthpay.core.interfaces.repository import ILedgerRepository
from stealthpay.core.services import BalanceService
from stealthpay.core.use_cases.balance_validator import BalanceValidationWorker
from stealthpay.core.use_cases.cache_invalidation import CacheInvalidator
from stealthpay.core.use_cases.indexer import StealthIndexer
from stealthpay.core.use_cases.reconciliation import Reconciler
from stealthpay.core.use_cases.rpc_snapshot import RpcSnapshotService
from stealthpay.infrastructure.cache.redis_service import RedisService
from stealthpay.infrastructure.gateways.aptos_public_api import AptosPublicGateway
from stealthpay.infrastructure.gateways.rate_limiter import RpcRateGate
from stealthpay.infrastructure.persistence.memory_repo import InMemoryLedgerRepo
from stealthpay.infrastructure.persistence.postgres_repo import PostgresLedgerRepo
from stealthpay.workers.scheduler import StealthWorkerScheduler

# Setup Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("StealthPay")

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")


class ServiceContainer:
    """Everything one process shares: repository, chain reader, caches and workers."""

    def __init__(
        self,
        settings: Settings,
        repo: ILedgerRepository,
        reader: IChainReader,
        hot_cache: Optional[IHotCache] = None
    ):
        self.settings = settings
        self.repo = repo
        self.reader = reader
        self.hot_cache = hot_cache
        self.invalidator = CacheInvalidator(repo, hot_cache)
        self.snapshots = RpcSnapshotService(repo, reader, settings)
        self.balances = BalanceService(repo, self.snapshots, settings, hot_cache)
        self.indexer = StealthIndexer(repo, reader, self.invalidator, settings)
        self.validator = BalanceValidationWorker(repo, self.snapshots, Reconciler(repo, settings), settings)
        self.scheduler: Optional[StealthWorkerScheduler] = None

    def start_workers(self):
        self.scheduler = StealthWorkerScheduler(self.indexer, self.validator, self.invalidator, self.settings)
        self.scheduler.start()

    def stop_workers(self):
        if self.scheduler:
            self.scheduler.shutdown()
            self.scheduler = None


def build_container(settings: Settings) -> ServiceContainer:
    if settings.database_url:
        repo = PostgresLedgerRepo(settings.database_url)
    else:
        logger.warning("DATABASE_URL not set. Using the in-memory ledger; data is lost on restart.")
        repo = InMemoryLedgerRepo()

    gate = RpcRateGate(settings.rpc_min_interval_ms)
    reader = AptosPublicGateway(settings.chain, gate, api_key=settings.aptos_api_key)
    return ServiceContainer(settings, repo, reader, RedisService(settings.redis_url))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    container = build_container(settings)
    app.state.container = container
    if settings.workers_enabled:
        container.start_workers()
    else:
        logger.info("WORKERS_ENABLED is off. Serving reads only.")
    try:
        yield
    finally:
        container.stop_workers()
        if isinstance(container.reader, AptosPublicGateway):
            await container.reader.aclose()


app = FastAPI(
    title="StealthPay API",
    version="0.1.0",
    description="Stealth-address payment indexer and balance ledger",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Dependency Injection ---

def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Services not initialised")
    return container


def get_balance_service(container: ServiceContainer = Depends(get_container)) -> BalanceService:
    return container.balances


def resolve_chain(chain: Optional[str], container: ServiceContainer) -> str:
    chain = chain or container.settings.chain_id
    if chain not in container.settings.chains:
        raise HTTPException(status_code=400, detail=f"Unsupported chain: {chain}")
    return chain

# --- Endpoints ---

@app.get("/health")
async def health(container: ServiceContainer = Depends(get_container)):
    hot_cache = container.hot_cache
    return {
        "status": "healthy",
        "chain": container.settings.chain_id,
        "workers": container.scheduler is not None,
        "hot_cache": bool(hot_cache and hot_cache.ping()),
    }


@app.get("/v1/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: str = Query(..., description="User id"),
    chain: Optional[str] = Query(None, description="Chain id, defaults to the configured chain"),
    container: ServiceContainer = Depends(get_container),
    service: BalanceService = Depends(get_balance_service)
):
    return await service.get_balance(user_id, resolve_chain(chain, container))


@app.get("/v1/address-balance", response_model=AddressBalanceResponse)
async def get_address_balance(
    address: str = Query(..., description="Stealth address"),
    chain: Optional[str] = Query(None),
    container: ServiceContainer = Depends(get_container),
    service: BalanceService = Depends(get_balance_service)
):
    if not _ADDRESS_RE.match(address):
        raise HTTPException(status_code=400, detail=f"Invalid address: {address}")
    return await service.get_address_balance(address, resolve_chain(chain, container))


@app.get("/v1/cache/stats", response_model=CacheStats)
async def get_cache_stats(service: BalanceService = Depends(get_balance_service)):
    return await service.get_cache_stats()
