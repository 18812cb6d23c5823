"""
Shared cache for predictions and upstream lookups
"""
import json
import hashlib
from typing import Optional, Any, Callable, Dict
from datetime import datetime, timedelta
from functools import wraps
import redis
from config import get_settings
from logging_config import get_logger

logger = get_logger(__name__)
settings = get_settings()


class CacheManager:
    """Redis cache with an in-process dictionary fallback"""

    def __init__(self, redis_url: Optional[str] = None, default_ttl: int = 300, max_memory_entries: int = 10000):
        self.default_ttl = default_ttl
        self.max_memory_entries = max_memory_entries
        self.redis_client = None
        self.memory_cache: Dict[str, tuple] = {}
        if redis_url:
            self._init_redis(redis_url)

    def _init_redis(self, redis_url: str):
        try:
            self.redis_client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.redis_client.ping()
            logger.info("Redis cache initialized successfully")
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed, using memory cache: {e}")
            self.redis_client = None

    @property
    def backend(self) -> str:
        return "redis" if self.redis_client else "memory"

    def make_key(self, prefix: str, params: dict) -> str:
        """Build a stable key from a prefix and JSON-serialisable params"""
        sorted_params = json.dumps(params, sort_keys=True, default=str)
        param_hash = hashlib.md5(sorted_params.encode()).hexdigest()
        return f"{prefix}:{param_hash}"

    def get(self, key: str) -> Optional[Any]:
        try:
            if self.redis_client:
                value = self.redis_client.get(key)
                if value:
                    return json.loads(value)
            elif key in self.memory_cache:
                data, expiry = self.memory_cache[key]
                if datetime.now() < expiry:
                    return data
                del self.memory_cache[key]
        except (redis.RedisError, ValueError) as e:
            logger.error(f"Cache get error: {e}")
        return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        ttl = ttl or self.default_ttl

        try:
            serialized = json.dumps(value)

            if self.redis_client:
                return bool(self.redis_client.setex(key, ttl, serialized))

            if len(self.memory_cache) >= self.max_memory_entries:
                self.clear_expired()
            expiry = datetime.now() + timedelta(seconds=ttl)
            self.memory_cache[key] = (json.loads(serialized), expiry)
            return True
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.error(f"Cache set error: {e}")
            return False

    def delete(self, pattern: str) -> int:
        """Delete keys matching a glob-style prefix pattern"""
        try:
            if self.redis_client:
                keys = self.redis_client.keys(pattern)
                if keys:
                    return self.redis_client.delete(*keys)
                return 0

            needle = pattern.replace('*', '')
            keys_to_delete = [k for k in self.memory_cache if needle in k]
            for key in keys_to_delete:
                del self.memory_cache[key]
            return len(keys_to_delete)
        except redis.RedisError as e:
            logger.error(f"Cache delete error: {e}")
        return 0

    def size(self, pattern: str = "*") -> int:
        if self.redis_client:
            return len(self.redis_client.keys(pattern))
        needle = pattern.replace("*", "")
        now = datetime.now()
        return len([k for k, (_, exp) in self.memory_cache.items() if needle in k and now < exp])

    def clear_expired(self) -> int:
        if self.redis_client:
            return 0
        now = datetime.now()
        expired_keys = [k for k, (_, exp) in self.memory_cache.items() if exp <= now]
        for key in expired_keys:
            del self.memory_cache[key]
        return len(expired_keys)

    def ping(self) -> bool:
        self.set("health_check", "ok", ttl=5)
        return self.get("health_check") == "ok"


# Global cache instance
cache = CacheManager(settings.redis_url, settings.cache_ttl)


def cached(prefix: str, ttl: Optional[int] = None):
    """Cache the JSON result of an async function keyed on its arguments"""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            cache_key = cache.make_key(prefix, {"args": str(args[1:]), "kwargs": str(kwargs)})

            cached_result = cache.get(cache_key)
            if cached_result is not None:
                logger.debug(f"Cache hit for {prefix}")
                return cached_result

            result = await func(*args, **kwargs)
            if result:
                cache.set(cache_key, result, ttl)
            return result
        return wrapper
    return decorator
