import json
import logging
from typing import Any, Optional

import redis
from pydantic import BaseModel

from stealthpay.core.interfaces.cache import IHotCache

logger = logging.getLogger(__name__)


class RedisService(IHotCache):
    """
    Hot cache for computed balance responses. Keys are namespaced under
    `prefix`. With no URL, or an unreachable server, every call is a no-op.
    """

    def __init__(self, redis_url: Optional[str] = None, prefix: str = "stealthpay:"):
        self.prefix = prefix
        self.client = None
        if not redis_url:
            logger.info("REDIS_URL not set. Balance hot cache disabled.")
            return
        try:
            self.client = redis.from_url(redis_url, decode_responses=True)
            self.client.ping()
            logger.info("Connected to Redis for balance caching.")
        except Exception as e:
            logger.warning(f"Failed to connect to Redis: {e}. Balance hot cache disabled.")
            self.client = None

    def ping(self) -> bool:
        if not self.client:
            return False
        try:
            return bool(self.client.ping())
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    def get(self, key: str) -> Optional[Any]:
        if not self.client:
            return None
        try:
            data = self.client.get(self.prefix + key)
            return json.loads(data) if data else None
        except Exception as e:
            logger.warning(f"Redis get error for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: int = 60):
        if not self.client:
            return
        try:
            if isinstance(value, BaseModel):
                serialized = value.model_dump_json()
            else:
                serialized = json.dumps(value, default=str)
            self.client.setex(self.prefix + key, ttl_seconds, serialized)
        except Exception as e:
            logger.warning(f"Redis set error for {key}: {e}")

    def delete(self, key: str):
        if not self.client:
            return
        try:
            self.client.delete(self.prefix + key)
        except Exception as e:
            logger.warning(f"Redis delete error for {key}: {e}")
