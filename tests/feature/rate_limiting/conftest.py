"""Fixtures for scenarios that need a Redis server behind a network."""

import time

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError


class NetworkFakeRedis(fakeredis.FakeRedis):
    """In-process Redis that pays a round trip per command and can be unplugged."""

    def __init__(self, *args, latency: float = 0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.latency = latency
        self.reachable = True

    def execute_command(self, *args, **options):
        if not self.reachable:
            raise RedisConnectionError("connection refused")
        time.sleep(self.latency)
        return super().execute_command(*args, **options)


@pytest.fixture
def network_redis():
    client = NetworkFakeRedis(server=fakeredis.FakeServer(), decode_responses=True, latency=0.001)
    yield client
    client.close()
