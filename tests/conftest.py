import os
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")

from nila_admin.services.settlements import SettlementService  # noqa: E402
from nila_admin.stores.base import SettlementStores  # noqa: E402
from nila_admin.stores.memory import memory_stores  # noqa: E402
from nila_admin.stores.records import SettlementRequest  # noqa: E402


@pytest.fixture
def stores() -> SettlementStores:
    return memory_stores(applied_window=50)


@pytest.fixture
def service(stores: SettlementStores) -> SettlementService:
    return SettlementService(stores, store_timeout=1.0, deadline=5.0, conflict_retries=3, stale_after=60)


@pytest.fixture
def make_request():
    def _make(user_id: str = "user-1", credits_used: int = 200, **overrides) -> SettlementRequest:
        data = {
            "user_id": user_id,
            "credits_used": credits_used,
            "reward_amount": Decimal("10"),
            "network": "polygon",
            "wallet_address": "0xabc",
        }
        data.update(overrides)
        return SettlementRequest(**data)
    return _make


@pytest_asyncio.fixture
async def client(service: SettlementService) -> AsyncGenerator[AsyncClient, None]:
    from nila_admin.core.security import create_session_cookie, operator_session_payload
    from nila_admin.deps import SESSION_COOKIE_NAME, get_settlement_service
    from nila_admin.main import app

    app.dependency_overrides[get_settlement_service] = lambda: service
    cookie = create_session_cookie(operator_session_payload("op-1", "ops@example.com"))
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={SESSION_COOKIE_NAME: cookie},
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
