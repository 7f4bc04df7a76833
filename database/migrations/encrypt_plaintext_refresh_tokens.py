#!/usr/bin/env python3
"""
Move legacy plaintext refresh tokens into the encrypted columns.

Early deployments stored bank_connections.refresh_token in clear text. This
encrypts every such value with TOKEN_ENCRYPTION_KEY, writes it to
encrypted_refresh_token / refresh_token_iv / refresh_token_auth_tag and
clears the plaintext column. Safe to run more than once.
"""
from sqlalchemy import inspect, text

from backend.app.bank_integration.encryption import CredentialVault


def migrate(engine, vault: CredentialVault) -> int:
    """Returns the number of connections converted."""
    columns = {c["name"] for c in inspect(engine).get_columns("bank_connections")}
    if "refresh_token" not in columns:
        print("No legacy refresh_token column, nothing to do")
        return 0

    converted = 0
    with engine.connect() as conn:
        rows = conn.execute(text(
            "SELECT id, refresh_token FROM bank_connections "
            "WHERE refresh_token IS NOT NULL AND encrypted_refresh_token IS NULL"
        )).fetchall()

        print(f"Found {len(rows)} plaintext refresh tokens to encrypt")

        for connection_id, refresh_token in rows:
            secret = vault.encrypt(refresh_token)
            conn.execute(
                text(
                    "UPDATE bank_connections SET encrypted_refresh_token = :ciphertext, "
                    "refresh_token_iv = :iv, refresh_token_auth_tag = :tag, refresh_token = NULL "
                    "WHERE id = :id"
                ),
                {"ciphertext": secret.ciphertext, "iv": secret.iv, "tag": secret.auth_tag, "id": connection_id}
            )
            converted += 1

        conn.commit()

    print(f"Encrypted {converted} refresh tokens")
    return converted


if __name__ == "__main__":
    from backend.config import get_settings
    from backend.database import engine

    migrate(engine, CredentialVault.from_hex(get_settings().token_encryption_key))
