"""Pytest configuration and fixtures for knife federation tests."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from knife_activitypub.config import KnifeConfig
from knife_activitypub.models import Base


@pytest.fixture
def config() -> KnifeConfig:
    """Create test configuration."""
    return KnifeConfig(
        federation={
            "protocol": "https",
            "host": "knife.test",
            "delivery_rate_per_minute": 6000,
        },
        server={"host": "127.0.0.1", "port": 8080},
        database={"url": "sqlite+aiosqlite:///:memory:"},
    )


@pytest.fixture
def base_url(config) -> str:
    return config.federation.base_url


@pytest_asyncio.fixture
async def session_maker():
    """Create in-memory database session maker for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_maker(tmp_path):
    """File-backed database, for tests that open concurrent transactions."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'knife.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker) -> AsyncSession:
    """Create database session for tests."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def remote_actor_doc() -> dict:
    """Actor document as a Mastodon server would serve it."""
    return {
        "@context": [
            "https://www.w3.org/ns/activitystreams",
            "https://w3id.org/security/v1",
        ],
        "id": "https://remote.example/users/bob",
        "type": "Person",
        "preferredUsername": "bob",
        "name": "Bob",
        "summary": "<p>Remote user</p>",
        "url": "https://remote.example/@bob",
        "inbox": "https://remote.example/users/bob/inbox",
        "outbox": "https://remote.example/users/bob/outbox",
        "endpoints": {"sharedInbox": "https://remote.example/inbox"},
        "publicKey": {
            "id": "https://remote.example/users/bob#main-key",
            "owner": "https://remote.example/users/bob",
            "publicKeyPem": "-----BEGIN PUBLIC KEY-----\nMIIB...\n-----END PUBLIC KEY-----",
        },
    }
