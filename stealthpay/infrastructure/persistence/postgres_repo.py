import asyncio
import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence

import psycopg2
from psycopg2.extras import Json, RealDictCursor, execute_values

from stealthpay.core.entities.balance import (
    AddressBalanceCache,
    AssetHolding,
    AssetInfo,
    CacheStats,
    UserBalanceSummary,
)
from stealthpay.core.entities.keys import RegisteredViewingKey
from stealthpay.core.entities.ledger import (
    AddressActivity,
    BalanceAdjustment,
    IndexedPayment,
    IndexedWithdrawal,
    LinkRef,
)
from stealthpay.core.entities.processing import ProcessingLogEntry, ProcessingType
from stealthpay.core.interfaces.repository import ILedgerRepository

logger = logging.getLogger(__name__)

PAYMENT_COLUMNS = (
    "chain", "tx_id", "version", "event_index", "timestamp", "stealth_owner", "ephemeral_pubkey",
    "payer", "asset_id", "amount", "encrypted_label", "memo", "encrypted_note", "label", "note",
    "link_id", "owner_user_id", "payer_user_id", "announce",
)

WITHDRAWAL_COLUMNS = (
    "chain", "tx_id", "version", "timestamp", "stealth_owner", "destination", "asset_id", "amount",
    "amount_after_fee", "user_id", "destination_user_id", "is_internal_transfer", "is_processed",
)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS payments (
        id BIGSERIAL PRIMARY KEY,
        chain VARCHAR NOT NULL,
        tx_id VARCHAR NOT NULL,
        version BIGINT NOT NULL,
        event_index INTEGER NOT NULL,
        timestamp BIGINT NOT NULL,
        stealth_owner VARCHAR NOT NULL,
        ephemeral_pubkey VARCHAR NOT NULL,
        payer VARCHAR,
        asset_id VARCHAR NOT NULL,
        amount NUMERIC(78, 0) NOT NULL,
        encrypted_label VARCHAR,
        memo VARCHAR,
        encrypted_note VARCHAR,
        label VARCHAR,
        note VARCHAR,
        link_id VARCHAR,
        owner_user_id VARCHAR,
        payer_user_id VARCHAR,
        announce BOOLEAN DEFAULT TRUE,
        UNIQUE (chain, tx_id, event_index, stealth_owner, ephemeral_pubkey, asset_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS payments_owner_idx ON payments (stealth_owner, chain);",
    "CREATE INDEX IF NOT EXISTS payments_user_idx ON payments (owner_user_id, chain);",
    """
    CREATE TABLE IF NOT EXISTS withdrawals (
        id BIGSERIAL PRIMARY KEY,
        chain VARCHAR NOT NULL,
        tx_id VARCHAR NOT NULL,
        version BIGINT NOT NULL,
        timestamp BIGINT NOT NULL,
        stealth_owner VARCHAR NOT NULL,
        destination VARCHAR NOT NULL,
        asset_id VARCHAR NOT NULL,
        amount NUMERIC(78, 0) NOT NULL,
        amount_after_fee NUMERIC(78, 0),
        user_id VARCHAR,
        destination_user_id VARCHAR,
        is_internal_transfer BOOLEAN DEFAULT FALSE,
        is_processed BOOLEAN DEFAULT FALSE,
        UNIQUE (chain, tx_id, stealth_owner, asset_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS withdrawals_owner_idx ON withdrawals (stealth_owner, chain);",
    """
    CREATE TABLE IF NOT EXISTS balance_adjustments (
        stealth_owner VARCHAR NOT NULL,
        chain VARCHAR NOT NULL,
        asset_id VARCHAR NOT NULL,
        user_id VARCHAR NOT NULL,
        adjustment_amount NUMERIC(78, 0) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (stealth_owner, chain, asset_id, user_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS address_balance_cache (
        address VARCHAR NOT NULL,
        chain VARCHAR NOT NULL,
        native_amount NUMERIC(78, 0) NOT NULL DEFAULT 0,
        assets JSONB NOT NULL DEFAULT '[]',
        last_fetched TIMESTAMPTZ NOT NULL,
        last_activity_timestamp BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (address, chain)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS user_balance_summaries (
        user_id VARCHAR NOT NULL,
        chain VARCHAR NOT NULL,
        total_balance_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
        tokens_count INTEGER NOT NULL DEFAULT 0,
        stealth_address_count INTEGER NOT NULL DEFAULT 0,
        last_full_refresh TIMESTAMPTZ NOT NULL,
        last_activity_timestamp BIGINT NOT NULL DEFAULT 0,
        invalidated_at TIMESTAMPTZ,
        PRIMARY KEY (user_id, chain)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS processing_logs (
        process_id VARCHAR NOT NULL,
        process_type VARCHAR NOT NULL,
        processed_count INTEGER NOT NULL DEFAULT 0,
        is_processed BOOLEAN NOT NULL DEFAULT FALSE,
        last_processed_at TIMESTAMPTZ,
        max_retries INTEGER NOT NULL DEFAULT 5,
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (process_id, process_type)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS asset_info (
        asset_id VARCHAR NOT NULL,
        chain VARCHAR NOT NULL,
        name VARCHAR NOT NULL,
        symbol VARCHAR NOT NULL,
        decimals INTEGER NOT NULL,
        image_url VARCHAR,
        price_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
        is_native BOOLEAN NOT NULL DEFAULT FALSE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (asset_id, chain)
    );
    """,
    # owned by the wallet and link services; created here so a fresh database works
    """
    CREATE TABLE IF NOT EXISTS user_wallets (
        user_id VARCHAR NOT NULL,
        wallet_id VARCHAR PRIMARY KEY,
        meta_spend_pub VARCHAR NOT NULL,
        meta_view_pub VARCHAR NOT NULL,
        meta_view_priv VARCHAR NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS links (
        link_id VARCHAR PRIMARY KEY,
        user_id VARCHAR NOT NULL,
        label VARCHAR
    );
    """,
]


def _int(value) -> Optional[int]:
    return int(value) if value is not None else None


def _payment(row: dict) -> IndexedPayment:
    return IndexedPayment(**{**row, "amount": int(row["amount"])})


def _withdrawal(row: dict) -> IndexedWithdrawal:
    return IndexedWithdrawal(**{
        **row,
        "amount": int(row["amount"]),
        "amount_after_fee": _int(row["amount_after_fee"]),
    })


def _cache(row: dict) -> AddressBalanceCache:
    return AddressBalanceCache(
        address=row["address"],
        chain=row["chain"],
        native_amount=int(row["native_amount"]),
        assets=[AssetHolding(asset_id=a["asset_id"], amount=int(a["amount"])) for a in row["assets"] or []],
        last_fetched=row["last_fetched"],
        last_activity_timestamp=row["last_activity_timestamp"],
    )


class PostgresLedgerRepo(ILedgerRepository):
    """
    psycopg2-backed repository. Each statement runs on its own short-lived
    connection in a worker thread.
    """

    def __init__(self, dsn: str):
        self.dsn = dsn
        self._init_db()

    def _init_db(self):
        conn = psycopg2.connect(self.dsn)
        cur = conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement)
        conn.commit()
        cur.close()
        conn.close()
        logger.info("Ledger schema ready")

    def _run(self, query: str, params: Sequence[Any] = (), fetch: Optional[str] = None):
        conn = psycopg2.connect(self.dsn)
        try:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(query, params)
            if fetch == "one":
                result = cur.fetchone()
            elif fetch == "all":
                result = cur.fetchall()
            else:
                result = cur.rowcount
            conn.commit()
            cur.close()
            return result
        finally:
            conn.close()

    async def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[dict]:
        return await asyncio.to_thread(self._run, query, params, "all")

    async def _fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[dict]:
        return await asyncio.to_thread(self._run, query, params, "one")

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        return await asyncio.to_thread(self._run, query, params, None)

    # --- Payments ---

    async def get_max_version(self, chain: str) -> int:
        row = await self._fetch_one(
            """
            SELECT GREATEST(
                (SELECT COALESCE(MAX(version), 0) FROM payments WHERE chain = %s),
                (SELECT COALESCE(MAX(version), 0) FROM withdrawals WHERE chain = %s)
            ) AS max_version
            """,
            (chain, chain),
        )
        return int(row["max_version"]) if row else 0

    async def insert_payment(self, payment: IndexedPayment) -> Optional[IndexedPayment]:
        columns = ", ".join(PAYMENT_COLUMNS)
        placeholders = ", ".join(["%s"] * len(PAYMENT_COLUMNS))
        row = await self._fetch_one(
            f"""
            INSERT INTO payments ({columns}) VALUES ({placeholders})
            ON CONFLICT (chain, tx_id, event_index, stealth_owner, ephemeral_pubkey, asset_id) DO NOTHING
            RETURNING id
            """,
            [getattr(payment, c) for c in PAYMENT_COLUMNS],
        )
        if row is None:
            return None
        return payment.model_copy(update={"id": row["id"]})

    async def get_payment(self, payment_id: int) -> Optional[IndexedPayment]:
        row = await self._fetch_one("SELECT * FROM payments WHERE id = %s", (payment_id,))
        return _payment(row) if row else None

    async def update_payment(self, payment: IndexedPayment) -> None:
        await self._execute(
            """
            UPDATE payments
            SET label = %s, note = %s, link_id = %s, owner_user_id = %s, payer_user_id = %s
            WHERE id = %s
            """,
            (payment.label, payment.note, payment.link_id, payment.owner_user_id, payment.payer_user_id, payment.id),
        )

    async def list_payments_for_address(self, address: str, chain: str) -> List[IndexedPayment]:
        rows = await self._fetch_all(
            "SELECT * FROM payments WHERE stealth_owner = %s AND chain = %s ORDER BY timestamp, id",
            (address, chain),
        )
        return [_payment(r) for r in rows]

    async def get_latest_payment_for_address(self, address: str, chain: str) -> Optional[IndexedPayment]:
        row = await self._fetch_one(
            "SELECT * FROM payments WHERE stealth_owner = %s AND chain = %s ORDER BY timestamp DESC, id DESC LIMIT 1",
            (address, chain),
        )
        return _payment(row) if row else None

    async def list_user_payments(self, user_id: str, chain: str) -> List[IndexedPayment]:
        rows = await self._fetch_all(
            "SELECT * FROM payments WHERE owner_user_id = %s AND chain = %s ORDER BY timestamp, id",
            (user_id, chain),
        )
        return [_payment(r) for r in rows]

    # --- Withdrawals ---

    async def insert_withdrawal(self, withdrawal: IndexedWithdrawal) -> Optional[IndexedWithdrawal]:
        columns = ", ".join(WITHDRAWAL_COLUMNS)
        placeholders = ", ".join(["%s"] * len(WITHDRAWAL_COLUMNS))
        row = await self._fetch_one(
            f"""
            INSERT INTO withdrawals ({columns}) VALUES ({placeholders})
            ON CONFLICT (chain, tx_id, stealth_owner, asset_id) DO NOTHING
            RETURNING id
            """,
            [getattr(withdrawal, c) for c in WITHDRAWAL_COLUMNS],
        )
        if row is None:
            return None
        return withdrawal.model_copy(update={"id": row["id"]})

    async def get_withdrawal(self, withdrawal_id: int) -> Optional[IndexedWithdrawal]:
        row = await self._fetch_one("SELECT * FROM withdrawals WHERE id = %s", (withdrawal_id,))
        return _withdrawal(row) if row else None

    async def update_withdrawal(self, withdrawal: IndexedWithdrawal) -> None:
        await self._execute(
            """
            UPDATE withdrawals
            SET user_id = %s, destination_user_id = %s, amount_after_fee = %s, is_processed = %s
            WHERE id = %s
            """,
            (
                withdrawal.user_id,
                withdrawal.destination_user_id,
                withdrawal.amount_after_fee,
                withdrawal.is_processed,
                withdrawal.id,
            ),
        )

    async def list_withdrawals_for_address(self, address: str, chain: str) -> List[IndexedWithdrawal]:
        rows = await self._fetch_all(
            "SELECT * FROM withdrawals WHERE stealth_owner = %s AND chain = %s ORDER BY timestamp, id",
            (address, chain),
        )
        return [_withdrawal(r) for r in rows]

    async def list_withdrawals_by_tx(self, tx_id: str, chain: str) -> List[IndexedWithdrawal]:
        rows = await self._fetch_all(
            "SELECT * FROM withdrawals WHERE tx_id = %s AND chain = %s ORDER BY id",
            (tx_id, chain),
        )
        return [_withdrawal(r) for r in rows]

    async def list_user_withdrawals(self, user_id: str, chain: str) -> List[IndexedWithdrawal]:
        rows = await self._fetch_all(
            "SELECT * FROM withdrawals WHERE user_id = %s AND chain = %s ORDER BY timestamp, id",
            (user_id, chain),
        )
        return [_withdrawal(r) for r in rows]

    async def list_unlinked_withdrawals(self, chain: str, limit: int = 50) -> List[IndexedWithdrawal]:
        rows = await self._fetch_all(
            """
            SELECT w.* FROM withdrawals w
            LEFT JOIN processing_logs p
                ON p.process_id = 'withdrawal:' || w.id AND p.process_type = %s
            WHERE w.chain = %s AND w.is_processed = FALSE AND w.user_id IS NULL
                AND (p.process_id IS NULL OR p.processed_count < p.max_retries)
            ORDER BY w.timestamp, w.id LIMIT %s
            """,
            (ProcessingType.WITHDRAWAL_USER_ID_SCAN.value, chain, limit),
        )
        return [_withdrawal(r) for r in rows]

    # --- Adjustments ---

    async def list_adjustments_for_address(self, address: str, chain: str) -> List[BalanceAdjustment]:
        rows = await self._fetch_all(
            "SELECT * FROM balance_adjustments WHERE stealth_owner = %s AND chain = %s",
            (address, chain),
        )
        return [BalanceAdjustment(**{**r, "adjustment_amount": int(r["adjustment_amount"])}) for r in rows]

    async def list_user_adjustments(self, user_id: str, chain: str) -> List[BalanceAdjustment]:
        rows = await self._fetch_all(
            "SELECT * FROM balance_adjustments WHERE user_id = %s AND chain = %s",
            (user_id, chain),
        )
        return [BalanceAdjustment(**{**r, "adjustment_amount": int(r["adjustment_amount"])}) for r in rows]

    async def upsert_adjustment(self, adjustment: BalanceAdjustment) -> None:
        await self._execute(
            """
            INSERT INTO balance_adjustments
                (stealth_owner, chain, asset_id, user_id, adjustment_amount, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (stealth_owner, chain, asset_id, user_id)
            DO UPDATE SET adjustment_amount = EXCLUDED.adjustment_amount, updated_at = EXCLUDED.updated_at
            """,
            (
                adjustment.stealth_owner,
                adjustment.chain,
                adjustment.asset_id,
                adjustment.user_id,
                adjustment.adjustment_amount,
                adjustment.created_at,
                adjustment.updated_at,
            ),
        )

    async def delete_adjustments(self, address: str, chain: str, asset_id: Optional[str] = None) -> int:
        if asset_id is None:
            return await self._execute(
                "DELETE FROM balance_adjustments WHERE stealth_owner = %s AND chain = %s",
                (address, chain),
            )
        return await self._execute(
            "DELETE FROM balance_adjustments WHERE stealth_owner = %s AND chain = %s AND asset_id = %s",
            (address, chain, asset_id),
        )

    # --- Address cache & summaries ---

    async def get_address_cache(self, address: str, chain: str) -> Optional[AddressBalanceCache]:
        row = await self._fetch_one(
            "SELECT * FROM address_balance_cache WHERE address = %s AND chain = %s",
            (address, chain),
        )
        return _cache(row) if row else None

    async def upsert_address_cache(self, cache: AddressBalanceCache) -> None:
        assets = Json([{"asset_id": h.asset_id, "amount": str(h.amount)} for h in cache.assets])
        await self._execute(
            """
            INSERT INTO address_balance_cache
                (address, chain, native_amount, assets, last_fetched, last_activity_timestamp)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (address, chain) DO UPDATE SET
                native_amount = EXCLUDED.native_amount,
                assets = EXCLUDED.assets,
                last_fetched = EXCLUDED.last_fetched,
                last_activity_timestamp = EXCLUDED.last_activity_timestamp
            """,
            (cache.address, cache.chain, cache.native_amount, assets, cache.last_fetched, cache.last_activity_timestamp),
        )

    async def delete_address_cache(self, address: str, chain: str) -> int:
        return await self._execute(
            "DELETE FROM address_balance_cache WHERE address = %s AND chain = %s",
            (address, chain),
        )

    async def list_address_caches(self, addresses: List[str], chain: str) -> List[AddressBalanceCache]:
        if not addresses:
            return []
        rows = await self._fetch_all(
            "SELECT * FROM address_balance_cache WHERE chain = %s AND address = ANY(%s)",
            (chain, list(addresses)),
        )
        return [_cache(r) for r in rows]

    async def delete_address_caches_older_than(self, before: datetime) -> int:
        return await self._execute("DELETE FROM address_balance_cache WHERE last_fetched < %s", (before,))

    async def get_user_summary(self, user_id: str, chain: str) -> Optional[UserBalanceSummary]:
        row = await self._fetch_one(
            "SELECT * FROM user_balance_summaries WHERE user_id = %s AND chain = %s",
            (user_id, chain),
        )
        return UserBalanceSummary(**row) if row else None

    async def upsert_user_summary(self, summary: UserBalanceSummary) -> None:
        await self._execute(
            """
            INSERT INTO user_balance_summaries
                (user_id, chain, total_balance_usd, tokens_count, stealth_address_count,
                 last_full_refresh, last_activity_timestamp, invalidated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, chain) DO UPDATE SET
                total_balance_usd = EXCLUDED.total_balance_usd,
                tokens_count = EXCLUDED.tokens_count,
                stealth_address_count = EXCLUDED.stealth_address_count,
                last_full_refresh = EXCLUDED.last_full_refresh,
                last_activity_timestamp = EXCLUDED.last_activity_timestamp,
                invalidated_at = EXCLUDED.invalidated_at
            """,
            (
                summary.user_id,
                summary.chain,
                summary.total_balance_usd,
                summary.tokens_count,
                summary.stealth_address_count,
                summary.last_full_refresh,
                summary.last_activity_timestamp,
                summary.invalidated_at,
            ),
        )

    async def mark_user_summary_stale(self, user_id: str, chain: str, at: datetime) -> None:
        await self._execute(
            "UPDATE user_balance_summaries SET invalidated_at = %s WHERE user_id = %s AND chain = %s",
            (at, user_id, chain),
        )

    async def delete_user_summaries_older_than(self, before: datetime) -> int:
        return await self._execute("DELETE FROM user_balance_summaries WHERE last_full_refresh < %s", (before,))

    async def get_cache_stats(self, fresh_after: datetime) -> CacheStats:
        row = await self._fetch_one(
            """
            SELECT
                (SELECT COUNT(*) FROM address_balance_cache) AS address_cache_rows,
                (SELECT COUNT(*) FROM address_balance_cache WHERE last_fetched >= %s) AS fresh_address_cache_rows,
                (SELECT COUNT(*) FROM user_balance_summaries) AS user_summaries,
                (SELECT COUNT(*) FROM user_balance_summaries WHERE invalidated_at IS NOT NULL) AS stale_user_summaries
            """,
            (fresh_after,),
        )
        return CacheStats(**row)

    # --- Processing log ---

    async def get_processing_log(self, process_id: str, process_type: ProcessingType) -> Optional[ProcessingLogEntry]:
        row = await self._fetch_one(
            "SELECT * FROM processing_logs WHERE process_id = %s AND process_type = %s",
            (process_id, process_type.value),
        )
        return ProcessingLogEntry(**row) if row else None

    async def record_processing_attempt(
        self,
        process_id: str,
        process_type: ProcessingType,
        success: bool,
        at: datetime,
        max_retries: int = 5
    ) -> ProcessingLogEntry:
        row = await self._fetch_one(
            """
            INSERT INTO processing_logs
                (process_id, process_type, processed_count, is_processed, last_processed_at, max_retries, created_at)
            VALUES (%s, %s, 1, %s, %s, %s, %s)
            ON CONFLICT (process_id, process_type) DO UPDATE SET
                processed_count = processing_logs.processed_count + 1,
                is_processed = EXCLUDED.is_processed,
                last_processed_at = EXCLUDED.last_processed_at
            RETURNING *
            """,
            (process_id, process_type.value, success, at, max_retries, at),
        )
        return ProcessingLogEntry(**row)

    async def list_unprocessed(self, process_type: ProcessingType, limit: int = 50) -> List[ProcessingLogEntry]:
        rows = await self._fetch_all(
            """
            SELECT * FROM processing_logs
            WHERE process_type = %s AND is_processed = FALSE AND processed_count < max_retries
            ORDER BY created_at LIMIT %s
            """,
            (process_type.value, limit),
        )
        return [ProcessingLogEntry(**r) for r in rows]

    # --- Assets ---

    async def get_asset(self, asset_id: str, chain: str) -> Optional[AssetInfo]:
        row = await self._fetch_one("SELECT * FROM asset_info WHERE asset_id = %s AND chain = %s", (asset_id, chain))
        return AssetInfo(**row) if row else None

    async def upsert_asset(self, asset: AssetInfo) -> None:
        await asyncio.to_thread(self.bulk_upsert_assets, [asset])

    def bulk_upsert_assets(self, assets: List[AssetInfo]):
        conn = psycopg2.connect(self.dsn)
        cur = conn.cursor()

        data = [
            (a.asset_id, a.chain, a.name, a.symbol, a.decimals, a.image_url, a.price_usd, a.is_native, a.is_verified)
            for a in assets
        ]

        insert_query = """
            INSERT INTO asset_info
                (asset_id, chain, name, symbol, decimals, image_url, price_usd, is_native, is_verified)
            VALUES %s
            ON CONFLICT (asset_id, chain) DO UPDATE SET
                name = EXCLUDED.name,
                symbol = EXCLUDED.symbol,
                decimals = EXCLUDED.decimals,
                image_url = EXCLUDED.image_url,
                price_usd = EXCLUDED.price_usd,
                is_native = EXCLUDED.is_native,
                is_verified = EXCLUDED.is_verified
        """

        execute_values(cur, insert_query, data)
        conn.commit()
        cur.close()
        conn.close()

    # --- Activity views ---

    async def latest_address_activity(self, address: str, chain: str) -> int:
        row = await self._fetch_one(
            """
            SELECT GREATEST(
                (SELECT COALESCE(MAX(timestamp), 0) FROM payments WHERE stealth_owner = %s AND chain = %s),
                (SELECT COALESCE(MAX(timestamp), 0) FROM withdrawals WHERE stealth_owner = %s AND chain = %s)
            ) AS latest
            """,
            (address, chain, address, chain),
        )
        return int(row["latest"]) if row else 0

    async def latest_user_activity(self, user_id: str, chain: str) -> int:
        row = await self._fetch_one(
            """
            SELECT GREATEST(
                (SELECT COALESCE(MAX(timestamp), 0) FROM payments WHERE owner_user_id = %s AND chain = %s),
                (SELECT COALESCE(MAX(timestamp), 0) FROM withdrawals WHERE user_id = %s AND chain = %s)
            ) AS latest
            """,
            (user_id, chain, user_id, chain),
        )
        return int(row["latest"]) if row else 0

    async def list_user_addresses(self, user_id: str, chain: str) -> List[str]:
        rows = await self._fetch_all(
            "SELECT DISTINCT stealth_owner FROM payments WHERE owner_user_id = %s AND chain = %s ORDER BY stealth_owner",
            (user_id, chain),
        )
        return [r["stealth_owner"] for r in rows]

    async def list_address_activity(self, chain: str, since: int = 0) -> List[AddressActivity]:
        rows = await self._fetch_all(
            """
            WITH activity AS (
                SELECT stealth_owner AS address, owner_user_id AS user_id, timestamp
                FROM payments WHERE chain = %s AND owner_user_id IS NOT NULL AND timestamp >= %s
                UNION ALL
                SELECT stealth_owner, user_id, timestamp
                FROM withdrawals WHERE chain = %s AND user_id IS NOT NULL AND timestamp >= %s
            )
            SELECT DISTINCT ON (address)
                address,
                user_id,
                MAX(timestamp) OVER (PARTITION BY address) AS last_activity,
                COUNT(*) OVER (PARTITION BY address) AS activity_count
            FROM activity
            ORDER BY address, timestamp DESC
            """,
            (chain, since, chain, since),
        )
        entries = [
            AddressActivity(
                address=r["address"],
                user_id=r["user_id"],
                last_activity=int(r["last_activity"]),
                activity_count=int(r["activity_count"]),
            )
            for r in rows
        ]
        entries.sort(key=lambda e: (-e.last_activity, e.address))
        return entries

    # --- Registries ---

    async def list_registered_viewing_keys(self) -> List[RegisteredViewingKey]:
        rows = await self._fetch_all(
            """
            SELECT user_id, wallet_id, meta_spend_pub, meta_view_pub, meta_view_priv, is_active
            FROM user_wallets WHERE is_active = TRUE
            """
        )
        return [RegisteredViewingKey(**r) for r in rows]

    async def get_link(self, link_id: str) -> Optional[LinkRef]:
        row = await self._fetch_one("SELECT link_id, user_id, label FROM links WHERE link_id = %s", (link_id,))
        return LinkRef(**row) if row else None
