# ops_engine/cache_utils.py
import json
import logging

import redis
from pydantic import BaseModel

from .db_utils import get_redis_client
from .custom_exceptions import UpstreamReadError

logger = logging.getLogger(__name__)


def _serialize(value) -> str:
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, list):
        return json.dumps([v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value])
    return json.dumps(value, default=str)


def cache_result(key: str, ttl_seconds: int, value, cache=None) -> None:
    """
    Writes a derived result under `key` with a TTL. Concurrent writers
    for the same key resolve last-write-wins.
    """
    cache = cache or get_redis_client()
    try:
        cache.setex(key, ttl_seconds, _serialize(value))
    except redis.RedisError as e:
        logger.error(f"Failed to write cache key '{key}': {e}")
        raise UpstreamReadError(f"Result cache unavailable while writing '{key}'.") from e
    logger.info(f"Cached '{key}' for {ttl_seconds}s")
