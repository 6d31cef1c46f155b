from abc import ABC, abstractmethod
from typing import Any, Optional


def balance_cache_key(user_id: str, chain: str) -> str:
    return f"balance:{chain}:{user_id}"


class IHotCache(ABC):
    """Best-effort key/value cache. Failures never propagate to callers."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int = 60):
        pass

    @abstractmethod
    def delete(self, key: str):
        pass

    def ping(self) -> bool:
        return True
