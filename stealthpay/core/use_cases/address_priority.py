"""
Selection of addresses for a balance validation run.

Recently active addresses come first, shared fairly between users so that
one busy user cannot starve the others. Addresses whose snapshot has aged
out fill the remaining budget.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel

from stealthpay.config import LedgerSettings
from stealthpay.core.entities.ledger import AddressActivity
from stealthpay.core.interfaces.repository import ILedgerRepository

logger = logging.getLogger(__name__)

ACTIVE_USER_WINDOW_DAYS = 7


class PriorityTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PrioritizedAddress(BaseModel):
    address: str
    user_id: str
    last_activity: int
    activity_count: int = 1
    priority: PriorityTier = PriorityTier.MEDIUM


def activity_window_hours(active_users: int) -> float:
    """More users means a narrower look-back, between 6 and 24 hours."""
    return max(6.0, min(24.0, 1000 / max(active_users, 1)))


def validation_scale(active_users: int) -> float:
    return min(3.0, max(0.5, 100 / max(active_users, 1)))


def _recency(entry: AddressActivity):
    return (-entry.last_activity, -entry.activity_count)


def distribute_fairly(activity: List[AddressActivity], limit: int, max_per_user: int = 100) -> List[PrioritizedAddress]:
    """
    Every user gets an equal share of 80% of the budget; the rest goes one
    address at a time to the most active users.
    """
    if limit <= 0 or not activity:
        return []

    by_user: Dict[str, List[AddressActivity]] = defaultdict(list)
    for entry in activity:
        by_user[entry.user_id].append(entry)

    users = len(by_user)
    base = max(1, int(limit * 0.8 // users))
    bonus_pool = max(0, limit - base * users)
    ranked = sorted(by_user, key=lambda u: -sum(e.activity_count for e in by_user[u]))

    selected: List[AddressActivity] = []
    for rank, user_id in enumerate(ranked):
        cap = min(max_per_user, base + (1 if rank < bonus_pool else 0))
        selected.extend(sorted(by_user[user_id], key=_recency)[:cap])

    selected.sort(key=_recency)
    return [
        PrioritizedAddress(
            address=e.address,
            user_id=e.user_id,
            last_activity=e.last_activity,
            activity_count=e.activity_count,
            priority=PriorityTier.HIGH,
        )
        for e in selected[:limit]
    ]


async def count_active_users(repo: ILedgerRepository, chain: str, now: datetime) -> int:
    since = int((now - timedelta(days=ACTIVE_USER_WINDOW_DAYS)).timestamp())
    return len({entry.user_id for entry in await repo.list_address_activity(chain, since)})


async def select_priority_addresses(
    repo: ILedgerRepository,
    chain: str,
    limit: int,
    active_users: int,
    settings: LedgerSettings,
    now: datetime
) -> List[PrioritizedAddress]:
    window = activity_window_hours(active_users)
    since = int((now - timedelta(hours=window)).timestamp())
    recent = await repo.list_address_activity(chain, since)
    logger.debug(f"{len(recent)} addresses active in the last {window:.1f}h")
    return distribute_fairly(recent, limit, settings.max_priority_per_user)


async def select_stale_addresses(
    repo: ILedgerRepository,
    chain: str,
    limit: int,
    settings: LedgerSettings,
    now: datetime,
    exclude: Optional[Set[str]] = None
) -> List[PrioritizedAddress]:
    """Attributed addresses with no snapshot or one older than stale_address_age."""
    if limit <= 0:
        return []
    exclude = exclude or set()
    candidates = [e for e in await repo.list_address_activity(chain) if e.address not in exclude]
    if not candidates:
        return []

    caches = await repo.list_address_caches([e.address for e in candidates], chain)
    fetched = {c.address: c.last_fetched for c in caches}
    cutoff = now - timedelta(seconds=settings.stale_address_age)

    per_user: Dict[str, int] = defaultdict(int)
    stale: List[AddressActivity] = []
    for entry in sorted(candidates, key=_recency):
        last_fetched = fetched.get(entry.address)
        if last_fetched is not None and last_fetched >= cutoff:
            continue
        if per_user[entry.user_id] >= settings.max_stale_per_user:
            continue
        per_user[entry.user_id] += 1
        stale.append(entry)

    return [
        PrioritizedAddress(
            address=e.address,
            user_id=e.user_id,
            last_activity=e.last_activity,
            activity_count=e.activity_count,
            priority=PriorityTier.LOW,
        )
        for e in stale[:limit]
    ]
