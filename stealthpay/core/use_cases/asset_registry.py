import logging
from typing import Optional

from stealthpay.config import NATIVE_APT_ASSET, USDC_ASSET
from stealthpay.core.entities.balance import AssetInfo
from stealthpay.core.interfaces.chain_reader import IChainReader
from stealthpay.core.interfaces.repository import ILedgerRepository

logger = logging.getLogger(__name__)

STABLE_MARKERS = ("USD", "EUR", "GBP", "USDT")


def default_asset_info(asset_id: str, chain: str, metadata: Optional[dict] = None) -> AssetInfo:
    """Builds metadata for an asset, with fixed values for APT and USDC."""
    metadata = metadata or {}
    tail = asset_id.split("::")[-1] or "UNKNOWN"
    is_native = asset_id == NATIVE_APT_ASSET
    is_usdc = asset_id == USDC_ASSET

    if is_native:
        name, symbol, decimals, image = "Aptos Coin", "APT", 8, "/assets/tokens/aptos.png"
    elif is_usdc:
        name, symbol, decimals, image = "USD Coin", "USDC", 6, "/assets/tokens/usdc.png"
    else:
        name = metadata.get("name") or tail
        symbol = metadata.get("symbol") or tail
        decimals = int(metadata.get("decimals") or 8)
        image = metadata.get("icon_uri") or None

    price = 1.0 if any(marker in symbol for marker in STABLE_MARKERS) else 0.0

    return AssetInfo(
        asset_id=asset_id,
        chain=chain,
        name=name,
        symbol=symbol,
        decimals=decimals,
        image_url=image,
        price_usd=price,
        is_native=is_native,
        is_verified=is_native or is_usdc,
    )


class AssetRegistry:
    def __init__(self, repo: ILedgerRepository, reader: IChainReader):
        self.repo = repo
        self.reader = reader

    async def get_or_create(self, asset_id: str, chain: str) -> Optional[AssetInfo]:
        """
        Cached metadata for the asset. A chain lookup failure still yields
        basic metadata; only a storage failure returns None.
        """
        try:
            existing = await self.repo.get_asset(asset_id, chain)
        except Exception as e:
            logger.error(f"Asset lookup failed for {asset_id}: {e}")
            return None
        if existing:
            return existing

        metadata = None
        if asset_id not in (NATIVE_APT_ASSET, USDC_ASSET):
            try:
                metadata = await self.reader.fetch_asset_metadata(asset_id)
            except Exception as e:
                logger.warning(f"Metadata fetch failed for {asset_id}, using basic info: {e}")

        info = default_asset_info(asset_id, chain, metadata)
        try:
            await self.repo.upsert_asset(info)
        except Exception as e:
            logger.error(f"Could not store asset metadata for {asset_id}: {e}")
            return None

        logger.info(f"Cached asset {asset_id} as {info.symbol} ({info.decimals} decimals)")
        return info
