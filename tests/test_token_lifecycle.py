import asyncio
from datetime import date
from decimal import Decimal

import httpx
import pytest

from backend.app.bank_integration.encryption import EncryptedSecret
from backend.app.bank_integration.exceptions import AuthTagError
from backend.app.bank_integration.providers.responses import TokenResponse
from backend.app.bank_integration.token_lifecycle import ConnectionState
from backend.app.models import (
    BankAccount, BankConnection, BankConnectionStatus, Transaction, TransactionSource, TransactionType
)
from tests.fakes import failing_refresh


def _stored_refresh_token(vault, connection):
    return vault.decrypt_text(EncryptedSecret(
        ciphertext=connection.encrypted_refresh_token,
        iv=connection.refresh_token_iv,
        auth_tag=connection.refresh_token_auth_tag,
    ))


def test_store_encrypts_refresh_token(lifecycle, vault, clock):
    connection = lifecycle.store("user-1", TokenResponse(access_token="at", expires_in=3600, refresh_token="rt-secret"))

    assert connection.access_token == "at"
    assert connection.encrypted_refresh_token != "rt-secret"
    assert _stored_refresh_token(vault, connection) == "rt-secret"
    assert connection.status == BankConnectionStatus.ACTIVE


def test_store_upserts_one_connection_per_user(lifecycle, db):
    lifecycle.store("user-1", TokenResponse(access_token="first", expires_in=3600, refresh_token="rt-1"))
    lifecycle.store("user-1", TokenResponse(access_token="second", expires_in=3600, refresh_token="rt-2"))

    rows = db.query(BankConnection).all()
    assert len(rows) == 1
    assert rows[0].access_token == "second"


def test_store_without_refresh_token_keeps_existing(lifecycle, vault):
    lifecycle.store("user-1", TokenResponse(access_token="first", expires_in=3600, refresh_token="rt-1"))
    connection = lifecycle.store("user-1", TokenResponse(access_token="second", expires_in=3600))

    assert _stored_refresh_token(vault, connection) == "rt-1"


@pytest.mark.asyncio
async def test_fresh_token_needs_no_network(lifecycle, provider):
    lifecycle.store("user-1", provider.token_response)

    assert await lifecycle.get_valid_access_token("user-1") == "access-1"
    assert provider.refreshed_with == []


@pytest.mark.asyncio
async def test_token_near_expiry_is_refreshed_once(lifecycle, provider, vault, clock):
    lifecycle.store("user-1", provider.token_response)
    clock.advance(minutes=56)

    assert await lifecycle.get_valid_access_token("user-1") == "access-2"
    assert provider.refreshed_with == ["refresh-1"]

    # Rotated refresh token is persisted and the new access token is fresh
    connection = lifecycle.get_connection("user-1")
    assert _stored_refresh_token(vault, connection) == "refresh-2"
    assert await lifecycle.get_valid_access_token("user-1") == "access-2"
    assert len(provider.refreshed_with) == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(lifecycle, provider, clock):
    lifecycle.store("user-1", provider.token_response)
    clock.advance(hours=2)

    tokens = await asyncio.gather(*(lifecycle.get_valid_access_token("user-1") for _ in range(3)))

    assert tokens == ["access-2"] * 3
    assert provider.refreshed_with == ["refresh-1"]


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [failing_refresh(), httpx.ConnectError("unreachable")])
async def test_refresh_failure_marks_reauth_and_keeps_connection(lifecycle, provider, clock, db, error):
    lifecycle.store("user-1", provider.token_response)
    provider.refresh_response = error
    clock.advance(hours=2)

    assert await lifecycle.get_valid_access_token("user-1") is None

    connection = db.query(BankConnection).one()
    assert connection.status == BankConnectionStatus.REAUTH_REQUIRED
    assert connection.connection_error.startswith("Refresh failed")
    assert lifecycle.get_state("user-1") == ConnectionState.REAUTH_REQUIRED


@pytest.mark.asyncio
async def test_missing_connection_returns_none(lifecycle):
    assert await lifecycle.get_valid_access_token("nobody") is None
    assert lifecycle.get_state("nobody") == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_tampered_refresh_token_raises(lifecycle, provider, clock, db):
    connection = lifecycle.store("user-1", provider.token_response)
    connection.refresh_token_auth_tag = "AAAAAAAAAAAAAAAAAAAAAA=="
    db.commit()
    clock.advance(hours=2)

    with pytest.raises(AuthTagError):
        await lifecycle.get_valid_access_token("user-1")
    assert provider.refreshed_with == []


def test_connection_states(lifecycle, provider, clock):
    lifecycle.store("user-1", provider.token_response)
    assert lifecycle.get_state("user-1") == ConnectionState.CONNECTED

    clock.advance(minutes=58)
    assert lifecycle.get_state("user-1") == ConnectionState.NEEDS_REFRESH


@pytest.mark.asyncio
async def test_disconnect_revokes_and_keeps_transactions(lifecycle, provider, db):
    lifecycle.store("user-1", provider.token_response)
    db.add(BankAccount(user_id="user-1", provider="fakebank", provider_account_id="acc-1"))
    db.add(Transaction(
        id="fb_tx-1", user_id="user-1", type=TransactionType.EXPENSE, amount=Decimal("1.00"),
        date=date(2024, 1, 15), category="Other", description="", source=TransactionSource.BANK
    ))
    db.commit()

    assert await lifecycle.disconnect("user-1") is True

    assert provider.revoked == ["access-1"]
    assert db.query(BankConnection).count() == 0
    assert db.query(BankAccount).count() == 0
    assert db.query(Transaction).count() == 1
    assert await lifecycle.disconnect("user-1") is False


@pytest.mark.asyncio
async def test_disconnect_survives_revoke_failure(lifecycle, provider, db):
    lifecycle.store("user-1", provider.token_response)

    async def broken_revoke(access_token):
        raise httpx.ConnectError("unreachable")

    provider.revoke_token = broken_revoke

    assert await lifecycle.disconnect("user-1") is True
    assert db.query(BankConnection).count() == 0
