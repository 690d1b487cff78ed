from __future__ import annotations

import fakeredis
import pytest

from imagepp.broker import RedisBroker
from imagepp.db import RedisDatabase
from tests._helpers import MemoryStorage, make_image_bytes


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def db(redis_client: fakeredis.FakeRedis) -> RedisDatabase:
    return RedisDatabase(redis_client, prefix="test")


@pytest.fixture
def broker(redis_client: fakeredis.FakeRedis) -> RedisBroker:
    return RedisBroker(redis_client, prefix="test")


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage({"k.jpg": make_image_bytes("JPEG")})
