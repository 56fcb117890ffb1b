import os
import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Use test DB
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "creditmeter_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("LEDGER_RETRY_BACKOFF_MS", "1")

_mongo_reachable: bool | None = None


@pytest_asyncio.fixture
async def db():
    """Throwaway database on the test MongoDB with every model and index registered. Skips without a server."""
    global _mongo_reachable
    from pymongo import AsyncMongoClient
    from pymongo.errors import PyMongoError

    from app.core.config import get_settings
    from app.db.init import init_db
    from app.services import pricing

    if _mongo_reachable is False:
        pytest.skip("MongoDB not reachable")
    settings = get_settings()
    client = AsyncMongoClient(settings.mongodb_uri, serverSelectionTimeoutMS=1500)
    try:
        await client.admin.command("ping")
    except PyMongoError:
        _mongo_reachable = False
        await client.close()
        pytest.skip("MongoDB not reachable")
    _mongo_reachable = True
    name = f"{settings.mongodb_db_name}_{uuid.uuid4().hex[:8]}"
    database = client[name]
    await init_db(database)
    pricing.invalidate()
    yield database
    pricing.invalidate()
    await client.drop_database(name)
    await client.close()


@pytest_asyncio.fixture
async def account(db):
    """Free-tier account 'acct1' holding the 25 starter credits."""
    from app.services import accounts as accounts_service
    return await accounts_service.create_account("acct1")


@pytest_asyncio.fixture
async def admin_account(db):
    from app.services import accounts as accounts_service
    return await accounts_service.create_account("admin1", role="admin")


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


def login(client: AsyncClient, account_id: str) -> None:
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME
    client.cookies.set(SESSION_COOKIE_NAME, create_session_cookie({"account_id": account_id}))
