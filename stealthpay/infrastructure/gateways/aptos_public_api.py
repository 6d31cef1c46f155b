import logging
from typing import Any, Dict, List, Optional

import httpx

from stealthpay.config import ChainConfig
from stealthpay.core.entities.balance import AccountHoldings, AssetHolding
from stealthpay.core.entities.events import ChainEvent, ChainTransactionDetail, ChainTransactionRef
from stealthpay.core.errors import ChainReaderError, EventDecodeError
from stealthpay.core.interfaces.chain_reader import IChainReader
from stealthpay.infrastructure.gateways.rate_limiter import RpcRateGate

logger = logging.getLogger(__name__)

USER_TRANSACTIONS_QUERY = """
query UserTransactions($contractAddress: String!, $limit: Int!, $offset: Int!, $minVersion: bigint!) {
  user_transactions(
    where: {
      entry_function_contract_address: {_eq: $contractAddress}
      version: {_gt: $minVersion}
    }
    limit: $limit
    offset: $offset
    order_by: {version: asc}
  ) {
    version
    sender
    entry_function_id_str
  }
}
"""

BALANCES_QUERY = """
query GetFungibleAssetBalances($address: String) {
  current_fungible_asset_balances(where: {owner_address: {_eq: $address}}) {
    asset_type
    amount
  }
}
"""

METADATA_QUERY = """
query GetFungibleAssetInfo($in: [String!]) {
  fungible_asset_metadata(where: {asset_type: {_in: $in}}, limit: 1) {
    name
    symbol
    decimals
    icon_uri
  }
}
"""


class AptosPublicGateway(IChainReader):
    """
    IChainReader over the public Aptos GraphQL indexer and fullnode REST API.
    Every request passes through the shared RPC gate.
    """

    def __init__(
        self,
        chain: ChainConfig,
        gate: RpcRateGate,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0
    ):
        self.chain = chain
        self.gate = gate
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(headers=headers, timeout=timeout)
        logger.info(f"AptosPublicGateway initialized. RPC: {chain.rpc_url}, indexer: {chain.indexer_url}")

    async def aclose(self):
        await self.client.aclose()

    async def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self.gate:
                response = await self.client.post(self.chain.indexer_url, json={"query": query, "variables": variables})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChainReaderError(f"GraphQL request failed: {e}") from e

        if payload.get("errors"):
            raise ChainReaderError(f"GraphQL errors: {payload['errors']}")
        return payload.get("data") or {}

    async def _rest(self, path: str) -> Optional[Any]:
        """GET against the fullnode; None on 404."""
        url = f"{self.chain.rpc_url.rstrip('/')}/{path.lstrip('/')}"
        try:
            async with self.gate:
                response = await self.client.get(url)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChainReaderError(f"REST request to {path} failed: {e}") from e

    async def fetch_transactions_since(
        self,
        contract_address: str,
        min_version: int,
        limit: int,
        offset: int = 0
    ) -> List[ChainTransactionRef]:
        data = await self._graphql(
            USER_TRANSACTIONS_QUERY,
            {
                "contractAddress": contract_address,
                "limit": limit,
                "offset": offset,
                "minVersion": str(min_version),
            },
        )
        rows = data.get("user_transactions") or []
        return [
            ChainTransactionRef(
                version=int(row["version"]),
                sender=row.get("sender"),
                entry_function=row.get("entry_function_id_str"),
            )
            for row in rows
        ]

    async def fetch_transaction_detail(self, version: int) -> Optional[ChainTransactionDetail]:
        raw = await self._rest(f"transactions/by_version/{version}")
        if raw is None:
            return None
        try:
            return ChainTransactionDetail(
                version=int(raw["version"]),
                hash=raw.get("hash"),
                type=raw.get("type", ""),
                success=bool(raw.get("success", False)),
                sender=raw.get("sender"),
                timestamp=int(raw.get("timestamp", 0)),
                events=[ChainEvent(type=e.get("type", ""), data=e.get("data") or {}) for e in raw.get("events", [])],
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise EventDecodeError(f"Unreadable transaction {version}: {e}") from e

    async def fetch_account_holdings(self, address: str) -> AccountHoldings:
        data = await self._graphql(BALANCES_QUERY, {"address": address})
        holdings = AccountHoldings(address=address)
        for row in data.get("current_fungible_asset_balances") or []:
            try:
                asset_type, amount = row["asset_type"], int(row["amount"])
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed balance row for {address}: {e}")
                continue
            if asset_type == self.chain.native_asset:
                holdings.native_amount = amount
            else:
                holdings.assets.append(AssetHolding(asset_id=asset_type, amount=amount))
        return holdings

    async def fetch_asset_metadata(self, asset_id: str) -> Optional[dict]:
        # fungible assets are addressed by object, legacy coins by type tag
        if "::" not in asset_id:
            resource = await self._rest(f"accounts/{asset_id}/resource/0x1::fungible_asset::Metadata")
            if resource and resource.get("data"):
                return resource["data"]

        data = await self._graphql(METADATA_QUERY, {"in": [asset_id]})
        rows = data.get("fungible_asset_metadata") or []
        return rows[0] if rows else None
