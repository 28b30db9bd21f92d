"""
Pytest configuration for trending pipeline tests.

Unit tests run against the in-memory Redis double from helpers.py.
Integration tests (marked `integration`) use a real Redis from environment
variables (REDIS_HOST, REDIS_PORT, REDIS_PASSWORD) and skip when it is
unreachable.
"""

import os
import sys
import uuid

import pytest
import redis
from dotenv import load_dotenv

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.dirname(__file__))

from helpers import FakeAsyncRedis, FakeClock

load_dotenv()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: requires Redis connection")


@pytest.fixture
def clock():
    """Manually advanced clock (epoch seconds)."""
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    """In-memory async Redis double sharing the test clock."""
    return FakeAsyncRedis(clock)


@pytest.fixture(scope="session")
def redis_config():
    """
    Real Redis connection config from environment.

    Returns dict with host, port, password, ssl_enabled for creating services.
    """
    return {
        "host": os.getenv("REDIS_HOST", "localhost"),
        "port": int(os.getenv("REDIS_PORT", "6379")),
        "password": os.getenv("REDIS_PASSWORD") or None,
        "ssl_enabled": os.getenv("REDIS_TLS_ENABLED", "false").lower() == "true",
    }


@pytest.fixture(scope="session")
def redis_client(redis_config):
    """
    Session-scoped synchronous Redis client for setup/cleanup.

    Skips all tests using it if Redis is unavailable.
    """
    connection_kwargs = {
        "host": redis_config["host"],
        "port": redis_config["port"],
        "password": redis_config["password"],
        "decode_responses": True,
        "socket_timeout": 10,
    }
    if redis_config["ssl_enabled"]:
        connection_kwargs["ssl"] = True
        connection_kwargs["ssl_cert_reqs"] = None

    try:
        client = redis.Redis(**connection_kwargs)
        client.ping()
    except redis.ConnectionError as e:
        pytest.skip(f"Redis not available: {e}")
    except Exception as e:
        pytest.skip(f"Redis connection error: {e}")

    yield client
    client.close()


@pytest.fixture
def test_namespace(redis_client):
    """
    Unique key prefix for one integration test; its keys are deleted afterwards.
    """
    namespace = f"test_{uuid.uuid4().hex[:8]}"
    yield namespace

    keys = redis_client.keys(f"{namespace}*")
    if keys:
        redis_client.delete(*keys)
