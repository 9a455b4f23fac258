"""
Advisory Redis counters. The relational store stays the source of truth; every
call here degrades to a logged no-op when Redis is unreachable.
"""
import json
import logging
from typing import Optional
import redis
from secure_mcq.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True,
    socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
    socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
)


def rate_limit_key(scope: str, identity: str) -> str:
    return f"ratelimit:{scope}:{identity}"


def violations_key(token: str) -> str:
    return f"session:{token}:violations"


def meta_key(token: str) -> str:
    return f"session:{token}:meta"


def check_rate_limit(scope: str, identity: str, limit: int, window: int) -> tuple[bool, int]:
    key = rate_limit_key(scope, identity)
    try:
        count = int(redis_client.incr(key, 1))
        if count == 1:
            redis_client.expire(key, window)
    except redis.RedisError as e:
        logger.warning("rate limit check skipped, redis unavailable: %s", e)
        return True, 0
    return count <= limit, count


def bump_violation_counter(token: str) -> Optional[int]:
    key = violations_key(token)
    try:
        pipe = redis_client.pipeline()
        pipe.incr(key, 1)
        pipe.expire(key, settings.SESSION_META_TTL)
        return int(pipe.execute()[0])
    except redis.RedisError as e:
        logger.warning("violation counter update failed for %s; continuing: %s", token, e)
        return None


def get_violation_counter(token: str) -> Optional[int]:
    try:
        raw = redis_client.get(violations_key(token))
    except redis.RedisError as e:
        logger.warning("violation counter read failed for %s: %s", token, e)
        return None
    return int(raw) if raw is not None else 0


def cache_session_meta(token: str, meta: dict) -> None:
    try:
        redis_client.setex(meta_key(token), settings.SESSION_META_TTL, json.dumps(meta))
    except redis.RedisError as e:
        logger.warning("session meta cache failed; continuing with database-backed session: %s", e)
