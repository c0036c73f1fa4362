"""
Redis connection setup using redis-py async client.

The queue engine uses Redis only for the distributed lock that keeps
maintenance cycles (re-scan + cleanup) from overlapping during a restart.
"""

import redis.asyncio as aioredis

from p2p_settlement.config import settings

redis = aioredis.from_url(
    settings.REDIS_URL,
    decode_responses=True,
    ssl=settings.REDIS_SSL,
)
