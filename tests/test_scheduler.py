from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.app.bank_integration.exceptions import TokenExpiredError
from backend.app.bank_integration.reconciler import SyncResult
from backend.app.bank_integration.scheduler import sync_all_connections
from backend.app.bank_integration.store import ConnectionStore
from backend.app.models import BankConnectionStatus


def _connect(db, user_id, status=BankConnectionStatus.ACTIVE):
    ConnectionStore(db).save_connection(user_id, "truelayer", {"access_token": "at", "status": status})


@pytest.mark.asyncio
async def test_syncs_active_connections_and_isolates_failures(db, session_factory, settings):
    _connect(db, "user-1")
    _connect(db, "user-2")
    _connect(db, "user-3", status=BankConnectionStatus.REAUTH_REQUIRED)

    synced_users = []

    async def fake_sync(user_id):
        synced_users.append(user_id)
        if user_id == "user-2":
            raise TokenExpiredError("Access token expired")
        return SyncResult(accounts=1, inserted=2)

    def service_factory(session, provider, settings):
        assert provider == "truelayer"
        service = MagicMock()
        service.sync = AsyncMock(side_effect=fake_sync)
        return service

    summary = await sync_all_connections(session_factory, settings, service_factory=service_factory)

    assert summary == {"synced": 1, "failed": 1}
    assert synced_users == ["user-1", "user-2"]


@pytest.mark.asyncio
async def test_no_connections(session_factory, settings):
    factory = MagicMock()

    summary = await sync_all_connections(session_factory, settings, service_factory=factory)

    assert summary == {"synced": 0, "failed": 0}
    factory.assert_not_called()
