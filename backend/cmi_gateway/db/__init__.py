"""
Database package for the CMI gateway.

Exports Redis client creation and lifecycle helpers.
"""
from .redis_client import create_redis_client, initialize_redis, close_redis

__all__ = [
    "create_redis_client",
    "initialize_redis",
    "close_redis",
]
