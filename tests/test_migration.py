from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from backend.app.bank_integration.encryption import EncryptedSecret
from database.migrations.encrypt_plaintext_refresh_tokens import migrate


def _legacy_engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE bank_connections ("
            "id INTEGER PRIMARY KEY, user_id TEXT, provider TEXT, access_token TEXT, "
            "refresh_token TEXT, encrypted_refresh_token TEXT, refresh_token_iv TEXT, "
            "refresh_token_auth_tag TEXT)"
        ))
        conn.execute(text(
            "INSERT INTO bank_connections (id, user_id, provider, access_token, refresh_token) VALUES "
            "(1, 'user-1', 'truelayer', 'at-1', 'legacy-refresh'), "
            "(2, 'user-2', 'truelayer', 'at-2', NULL)"
        ))
    return engine


def test_plaintext_tokens_are_encrypted(vault):
    engine = _legacy_engine()

    assert migrate(engine, vault) == 1

    with engine.connect() as conn:
        row = conn.execute(text(
            "SELECT refresh_token, encrypted_refresh_token, refresh_token_iv, refresh_token_auth_tag "
            "FROM bank_connections WHERE id = 1"
        )).one()

    assert row.refresh_token is None
    secret = EncryptedSecret(row.encrypted_refresh_token, row.refresh_token_iv, row.refresh_token_auth_tag)
    assert vault.decrypt_text(secret) == "legacy-refresh"


def test_rerun_is_a_no_op(vault):
    engine = _legacy_engine()
    migrate(engine, vault)

    assert migrate(engine, vault) == 0


def test_current_schema_needs_nothing(engine, vault):
    assert migrate(engine, vault) == 0
