# User value: This file gives the worker one well-configured Redis connection and fails loudly when it is unreachable.
import logging
import time

import redis
import redis.asyncio as aioredis

from digitizer.errors import InfraConnectError

logger = logging.getLogger("digitizer.redis")


async def connect_redis(redis_url: str, client_name: str = "digitizer-worker") -> aioredis.Redis:
    logger.info("Connecting to Redis")
    r = aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_keepalive=True,
        socket_connect_timeout=2,
        socket_timeout=15,
        retry_on_timeout=True,
        health_check_interval=30,
    )

    try:
        await r.ping()
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError) as exc:
        await r.aclose()
        raise InfraConnectError(f"Redis unreachable at startup: {exc}") from exc

    try:
        await r.client_setname(client_name)
        logger.info("Redis client name set to %s", client_name)
    except redis.exceptions.RedisError:
        logger.warning("Could not set Redis client name")

    logger.info("Redis connection successful")
    return r


async def log_redis_health(r: aioredis.Redis, prefix: str = "") -> None:
    try:
        t0 = time.time()
        pong = await r.ping()
        latency = int((time.time() - t0) * 1000)
        logger.info(f"{prefix}Redis PING ok={pong} latency={latency}ms")
    except redis.exceptions.RedisError as e:
        logger.error(f"{prefix}Redis PING FAILED: {e}")
