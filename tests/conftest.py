import asyncio

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from pos_service import cart, db
from pos_service.config import Settings
from pos_service.main import create_app

CART_ID = 1


@pytest.fixture()
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'pos.db'}"


@pytest.fixture()
def settings(database_url):
    return Settings(database_url=database_url, redis_url=None, default_cart_id=CART_ID)


@pytest.fixture()
def client(settings):
    app = create_app(settings)
    with TestClient(app) as client:
        yield client


@pytest.fixture()
def make_product(client):
    """Helper: POST /products and return the created product."""

    def _make(code="P1", name="Nasi Goreng", price=10000, featured=False):
        response = client.post(
            "/products",
            json={"code": code, "name": name, "price": price, "isFeatured": featured},
        )
        assert response.status_code == 201
        return response.json()

    return _make


class FakeRedis:
    """Records published messages instead of talking to a Redis server."""

    def __init__(self, fail_with=None):
        self.published = []
        self.fail_with = fail_with

    async def publish(self, channel, message):
        if self.fail_with is not None:
            raise self.fail_with
        self.published.append((channel, message))
        return 1


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def broken_redis():
    return FakeRedis(fail_with=RedisConnectionError("redis is down"))


@pytest.fixture()
def run_store(database_url):
    """
    Run ``scenario(sessions)`` against a fresh schema with the default cart.

    Engine-level tests use this instead of the HTTP client so they can
    drive concurrent checkouts and patch store functions.
    """

    def _run(scenario):
        async def main():
            engine = db.create_engine(database_url)
            try:
                await db.create_schema(engine)
                sessions = db.create_session_factory(engine)
                async with sessions() as session:
                    await cart.ensure_cart(session, CART_ID)
                return await scenario(sessions)
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return _run
