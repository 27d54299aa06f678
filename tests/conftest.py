"""Test fixtures — create/drop tables for each async test, mock webhook receivers."""

import json
import os
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_hookrelay.db"
os.environ["DATABASE_URL_SYNC"] = "sqlite:///./test_hookrelay.db"
os.environ["RETRY_SCHEDULER_ENABLED"] = "false"

from hookrelay.config import Settings  # noqa: E402
from hookrelay.database import Base, async_session, engine  # noqa: E402
from hookrelay.main import app  # noqa: E402
from hookrelay.models.webhook import ConfigStatus, WebhookConfig  # noqa: E402
from hookrelay.services.signing import generate_secret  # noqa: E402
from hookrelay.services.webhook_dispatcher import WebhookDispatcher  # noqa: E402

COMPANY_ID = "company-a"
OTHER_COMPANY_ID = "company-b"
HOOK_URL = "https://hooks.example.com/receiver"


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def make_config():
    """Insert a WebhookConfig directly, bypassing request validation."""

    async def _make(**overrides) -> WebhookConfig:
        values = {
            "company_id": COMPANY_ID,
            "name": "Orders hook",
            "url": HOOK_URL,
            "events": ["order.created"],
            "secret": generate_secret(),
            "status": ConfigStatus.ACTIVE.value,
            "headers": {},
            "timeout_ms": 5000,
            "max_retries": 3,
        }
        values.update(overrides)
        values["events"] = json.dumps(values["events"])
        values["headers"] = json.dumps(values["headers"])
        async with async_session() as session:
            config = WebhookConfig(**values)
            session.add(config)
            await session.commit()
            await session.refresh(config)
            return config

    return _make


@pytest_asyncio.fixture
async def make_dispatcher():
    """Build dispatchers whose HTTP calls go to an in-process handler."""
    created: list[WebhookDispatcher] = []

    def _make(handler, **settings_overrides) -> WebhookDispatcher:
        settings = Settings(**settings_overrides)
        dispatcher = WebhookDispatcher(
            session_factory=async_session,
            settings=settings,
            transport=httpx.MockTransport(handler),
        )
        created.append(dispatcher)
        return dispatcher

    yield _make
    for dispatcher in created:
        await dispatcher.stop()


class Receiver:
    """Records requests and replies with a scripted list of responses."""

    def __init__(self, *responses):
        self.responses = list(responses) or [httpx.Response(200, text="ok")]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        # Fresh copy per call; the client takes ownership of the response stream
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


@pytest.fixture
def receiver():
    return Receiver


@pytest_asyncio.fixture
async def reload():
    """Fetch a fresh copy of a row in a new session."""

    async def _reload(model, row_id):
        async with async_session() as session:
            return await session.get(model, row_id)

    return _reload
