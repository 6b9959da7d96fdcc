# ops_engine/db_utils.py
from functools import lru_cache

import redis
from sqlalchemy import create_engine

from .settings import settings


@lru_cache(maxsize=1)
def get_db_engine():
    """Creates and returns a SQLAlchemy engine from application settings."""
    connect_args = {}
    if settings.db_connection_string.startswith("postgresql"):
        # Bound every query so a slow store cannot stall the caller
        connect_args = {
            "connect_timeout": settings.db_connect_timeout_seconds,
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        }
    return create_engine(settings.db_connection_string, pool_pre_ping=True, connect_args=connect_args)


@lru_cache(maxsize=1)
def get_redis_client():
    """Creates and returns a Redis client for the result cache."""
    return redis.Redis.from_url(
        settings.redis_url,
        socket_timeout=settings.redis_timeout_seconds,
        socket_connect_timeout=settings.redis_timeout_seconds,
    )
