"""Database package — Postgres session factory for prototypes, Redis client for job tracking."""

from app.db.base import Base, close_db, database_reachable, get_session_factory, init_db
from app.db.redis import close_redis, get_redis, init_redis, redis_reachable

__all__ = [
    "Base",
    "close_db",
    "close_redis",
    "database_reachable",
    "get_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
    "redis_reachable",
]
