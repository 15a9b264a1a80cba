"""
Redis Cache Client for ContextBank.

Caches the bounded-context network view (see context_network.py). Caching is
optional: when REDIS_URL is unset or the server is unreachable, every helper
degrades to a miss and callers recompute from the database.
"""

import json
import logging
from typing import Any, Optional

import redis
from redis.exceptions import ConnectionError, RedisError

from .config import settings
from .constants import NETWORK_CACHE_GENERATION_KEY, NETWORK_CACHE_KEY

logger = logging.getLogger(__name__)

# =============================================================================
# Redis Connection
# =============================================================================


def create_redis_client(url: Optional[str] = None) -> Optional[redis.Redis]:
    """Connect to ``url``; returns None when unset or unreachable."""
    url = url or settings.redis_url
    if not url:
        logger.info("REDIS_URL not set. Network caching disabled.")
        return None

    try:
        client = redis.from_url(
            url,
            decode_responses=True,  # Auto-decode bytes to strings
            socket_connect_timeout=settings.storage_timeout_seconds,
            socket_timeout=settings.storage_timeout_seconds,
            health_check_interval=30,
        )
        client.ping()
        logger.info(f"Redis connected: {url.split('@')[-1]}")
        return client
    except (RedisError, ConnectionError) as e:
        logger.warning(f"Redis connection failed: {e}. Caching disabled.")
        return None


redis_client = create_redis_client()


# =============================================================================
# Cache Functions
# =============================================================================

def get_cache(key: str, client: Optional[redis.Redis] = None) -> Optional[Any]:
    """
    Get value from cache.

    Returns:
        Cached value (parsed from JSON) or None if not found
    """
    client = client or redis_client
    if not client:
        return None

    try:
        value = client.get(key)
        if value:
            return json.loads(value)
        return None
    except (RedisError, json.JSONDecodeError) as e:
        logger.warning(f"Cache get error for key '{key}': {e}")
        return None


def set_cache(key: str, value: Any, ttl: int = 300, client: Optional[redis.Redis] = None) -> bool:
    """
    Set value in cache with TTL.

    Args:
        key: Cache key
        value: Value to cache (will be JSON-serialized)
        ttl: Time-to-live in seconds (default: 5 minutes)

    Returns:
        True if successful, False otherwise
    """
    client = client or redis_client
    if not client:
        return False

    try:
        client.setex(key, ttl, json.dumps(value))
        return True
    except (RedisError, TypeError) as e:
        logger.warning(f"Cache set error for key '{key}': {e}")
        return False


def delete_cache(key: str, client: Optional[redis.Redis] = None) -> bool:
    """Delete value from cache. True if successful."""
    client = client or redis_client
    if not client:
        return False

    try:
        client.delete(key)
        return True
    except RedisError as e:
        logger.warning(f"Cache delete error for key '{key}': {e}")
        return False


# =============================================================================
# Network View Caching
# =============================================================================
#
# Entries are stamped with the invalidation generation current when the view
# was built. A transition that commits during a rebuild bumps the generation,
# so the older view it races with is rejected on read instead of served.

def network_generation(client: Optional[redis.Redis] = None) -> Optional[int]:
    """Current invalidation generation, or None when the cache is unavailable."""
    client = client or redis_client
    if not client:
        return None

    try:
        return int(client.get(NETWORK_CACHE_GENERATION_KEY) or 0)
    except (RedisError, ValueError) as e:
        logger.warning(f"Cache generation read error: {e}")
        return None


def get_cached_network(client: Optional[redis.Redis] = None) -> Optional[dict]:
    """Cached network view (JSON-mode dump), or None on a miss or a stale entry."""
    entry = get_cache(NETWORK_CACHE_KEY, client=client)
    if not isinstance(entry, dict) or "network" not in entry:
        return None

    generation = network_generation(client=client)
    if generation is None or entry.get("generation") != generation:
        logger.debug(f"Discarding network view from generation {entry.get('generation')} (now {generation})")
        return None
    return entry["network"]


def cache_network(
    network: dict,
    generation: Optional[int],
    ttl: Optional[int] = None,
    client: Optional[redis.Redis] = None,
) -> bool:
    """
    Cache a network view built at ``generation``.

    Skipped when the generation is unknown or an invalidation has already
    happened since it was read. TTL defaults to settings.network_cache_ttl_seconds.
    """
    if generation is None or network_generation(client=client) != generation:
        return False

    return set_cache(
        NETWORK_CACHE_KEY,
        {"generation": generation, "network": network},
        ttl or settings.network_cache_ttl_seconds,
        client=client,
    )


def invalidate_network(client: Optional[redis.Redis] = None) -> bool:
    """Bump the generation and drop the cached view after a bounded-context transition."""
    client = client or redis_client
    if not client:
        return False

    try:
        client.incr(NETWORK_CACHE_GENERATION_KEY)
    except RedisError as e:
        logger.warning(f"Cache generation bump error: {e}")
    return delete_cache(NETWORK_CACHE_KEY, client=client)


__all__ = [
    "redis_client",
    "create_redis_client",
    "get_cache",
    "set_cache",
    "delete_cache",
    "network_generation",
    "get_cached_network",
    "cache_network",
    "invalidate_network",
]
