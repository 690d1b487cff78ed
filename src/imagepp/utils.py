import sys
from contextlib import contextmanager

import redis
from loguru import logger

from .defines import Settings
from .errors import PersistenceError


def setup_logger(level: str | None = None):
    logger.remove()
    logger.add(sys.stderr, level=(level or Settings.LOG_LEVEL).upper())


def redis_client() -> redis.Redis:
    if Settings.REDIS_URL:
        logger.info("Connecting to Redis from REDIS_URL")
        return redis.Redis.from_url(Settings.REDIS_URL, decode_responses=True)

    logger.info(
        f"Connecting to Redis: {Settings.REDIS_HOST}:{Settings.REDIS_PORT}"
    )
    return redis.Redis(
        host=Settings.REDIS_HOST,
        port=Settings.REDIS_PORT,
        decode_responses=True,
    )


@contextmanager
def persistence(action: str):
    """Translate Redis failures into PersistenceError."""
    try:
        yield
    except redis.RedisError as e:
        raise PersistenceError(f"failed to {action}: {e}") from e


def retry_delay(retried: int, error: Exception | None = None, task=None) -> float:
    """Exponential backoff: 2^n seconds for the n-th retry."""
    return float(2**retried)
