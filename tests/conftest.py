import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-process ledger; no MongoDB or Redis needed
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")


@pytest.fixture(autouse=True)
def fresh_store():
    """Every test starts from an empty memory store."""
    from pointsledger.core.config import get_settings
    from pointsledger.store.base import get_store

    get_settings.cache_clear()
    get_store.cache_clear()
    yield get_store()
    get_store.cache_clear()


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from pointsledger.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    from pointsledger.core.security import create_admin_token
    return {"Authorization": f"Bearer {create_admin_token('admin-1')}"}


@pytest.fixture
def fund():
    """Give a user a completed recharge."""
    from pointsledger.services import ledger

    async def _fund(user_id: str, points, ref: str | None = None):
        return await ledger.recharge_wallet(user_id, points, ref or f"fund-{user_id}-{points}", status="completed")

    return _fund
