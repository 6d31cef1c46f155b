from abc import ABC, abstractmethod
from typing import List, Optional
from stealthpay.core.entities.events import ChainTransactionRef, ChainTransactionDetail
from stealthpay.core.entities.balance import AccountHoldings


class IChainReader(ABC):
    """
    Read-only access to the chain. Implementations raise ChainReaderError
    on transport or server failures.
    """

    @abstractmethod
    async def fetch_transactions_since(
        self,
        contract_address: str,
        min_version: int,
        limit: int,
        offset: int = 0
    ) -> List[ChainTransactionRef]:
        """
        Successful user transactions calling the contract with
        version > min_version, ascending by version.
        """
        pass

    @abstractmethod
    async def fetch_transaction_detail(self, version: int) -> Optional[ChainTransactionDetail]:
        pass

    @abstractmethod
    async def fetch_account_holdings(self, address: str) -> AccountHoldings:
        pass

    @abstractmethod
    async def fetch_asset_metadata(self, asset_id: str) -> Optional[dict]:
        """
        Returns {"name", "symbol", "decimals", "icon_uri"} or None when the
        asset is unknown to the chain.
        """
        pass
