"""
Configuration for Redis backed coordination between scheduler workers.
"""

import os
from config import settings


def get_redis_config() -> dict:
    """Get Redis configuration"""
    # Build Redis URL from components or use explicit URL if provided
    # Format: redis://[:password@]host:port/db
    if settings.REDIS_PASSWORD:
        redis_url = os.getenv(
            "REDIS_URL", f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_SERVER_PORT}/{settings.REDIS_DB}")
    else:
        redis_url = os.getenv(
            "REDIS_URL", f"redis://{settings.REDIS_HOST}:{settings.REDIS_SERVER_PORT}/{settings.REDIS_DB}")

    return {
        "host": settings.REDIS_HOST,
        "port": settings.REDIS_SERVER_PORT,
        "password": settings.REDIS_PASSWORD,
        "db": settings.REDIS_DB,
        "redis_url": redis_url,
        "enabled": settings.REDIS_ENABLED,
        "tick_lock_timeout": settings.TICK_LOCK_TIMEOUT,
    }


def should_use_redis() -> bool:
    """Check if Redis should back the tick lock and the broadcast store"""
    return settings.REDIS_ENABLED
