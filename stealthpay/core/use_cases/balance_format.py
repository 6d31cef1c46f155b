"""
Shared aggregation from per-(asset, address) raw totals to the token list
returned by every balance source.
"""
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel

from stealthpay.core.interfaces.repository import ILedgerRepository
from stealthpay.core.entities.balance import (
    AssetInfo,
    TokenBalance,
    AddressBalanceEntry,
    BalanceTotals,
    CalculatedBalance,
)


class AddressAmount(BaseModel):
    asset_id: str
    address: str
    raw: Decimal
    ephemeral_pubkey: Optional[str] = None
    memo: Optional[str] = None


def fallback_asset(asset_id: str, chain: str) -> AssetInfo:
    tail = asset_id.split("::")[-1] or "UNKNOWN"
    return AssetInfo(asset_id=asset_id, chain=chain, name=tail, symbol=tail, decimals=8)


def to_token_units(raw: Decimal, decimals: int) -> Decimal:
    return raw / (Decimal(10) ** decimals)


def assemble_balances(
    groups: Iterable[AddressAmount],
    assets: Dict[str, AssetInfo],
    address_set: Set[str],
    min_amount: Decimal = Decimal(0),
    record_count: int = 0
) -> CalculatedBalance:
    """
    Groups with a token-unit amount <= min_amount are dropped. The native
    asset sorts first, the rest by USD value descending.
    """
    tokens: Dict[str, dict] = {}
    total_usd = Decimal(0)

    for group in groups:
        asset = assets[group.asset_id]
        amount = to_token_units(group.raw, asset.decimals)
        if amount <= min_amount:
            continue
        usd = amount * Decimal(str(asset.price_usd or 0))

        token = tokens.setdefault(group.asset_id, {"asset": asset, "total": Decimal(0), "usd": Decimal(0), "balances": []})
        token["total"] += amount
        token["usd"] += usd
        total_usd += usd
        token["balances"].append(
            AddressBalanceEntry(
                address=group.address,
                amount=float(amount),
                ephemeral_pubkey=group.ephemeral_pubkey,
                memo=group.memo,
            )
        )

    result: List[TokenBalance] = []
    for asset_id, token in tokens.items():
        asset: AssetInfo = token["asset"]
        result.append(
            TokenBalance(
                asset_id=asset_id,
                name=asset.name,
                symbol=asset.symbol,
                decimals=asset.decimals,
                image_url=asset.image_url,
                price_usd=asset.price_usd,
                is_native=asset.is_native,
                is_verified=asset.is_verified,
                total=float(token["total"]),
                usd_value=float(token["usd"]),
                balances=token["balances"],
            )
        )

    result.sort(key=lambda t: (not t.is_native, -t.usd_value))

    return CalculatedBalance(
        tokens=result,
        summary=BalanceTotals(
            total_balance_usd=float(total_usd),
            tokens_count=len(result),
            stealth_address_count=len(address_set),
        ),
        record_count=record_count,
    )


async def load_assets(repo: ILedgerRepository, asset_ids: Iterable[str], chain: str) -> Dict[str, AssetInfo]:
    assets: Dict[str, AssetInfo] = {}
    for asset_id in set(asset_ids):
        assets[asset_id] = await repo.get_asset(asset_id, chain) or fallback_asset(asset_id, chain)
    return assets
