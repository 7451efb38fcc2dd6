from typing import AsyncGenerator
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from wallog import models
from wallog.config import Config
from wallog.config import DeliveryConfig
from wallog.database import AsyncSession
from wallog.federation import Federation
from wallog.main import create_app


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        domain="example.com",
        username="alice",
        name="Alice",
        summary="I write things",
        https=True,
        debug=True,
        key_size=1024,
        sqlalchemy_database=str(tmp_path / "wallog.db"),
        delivery=DeliveryConfig(
            max_attempts=3,
            base_delay_seconds=0,
            concurrency=4,
            timeout_seconds=5,
        ),
    )


@pytest.fixture
async def federation(config: Config) -> AsyncGenerator[Federation, None]:
    federation = Federation(config)
    await federation.startup()
    try:
        yield federation
    finally:
        await federation.shutdown()


@pytest.fixture
async def db_session(federation: Federation) -> AsyncGenerator[AsyncSession, None]:
    async with federation.database.session() as session:
        yield session


@pytest.fixture
async def local_actor(
    federation: Federation,
    db_session: AsyncSession,
) -> models.Actor:
    return await federation.directory.get_local_actor(db_session, "alice")


@pytest.fixture
def client(config: Config) -> Generator[TestClient, None, None]:
    with TestClient(create_app(config), base_url="https://example.com") as c:
        yield c
