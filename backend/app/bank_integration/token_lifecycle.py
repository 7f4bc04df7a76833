"""
Token Lifecycle Manager

Owns the per-user bank connection record: stores tokens after code
exchange, hands out valid access tokens (refreshing them shortly before
expiry) and tears connections down.
"""

import asyncio
import enum
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from backend.app.models import BankConnection, BankConnectionStatus

from .encryption import CredentialVault, EncryptedSecret
from .exceptions import TokenRefreshError
from .providers.base import BaseBankProvider
from .providers.responses import TokenResponse
from .store import ConnectionStore
from .timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_SKEW = timedelta(minutes=5)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    NEEDS_REFRESH = "needs_refresh"
    REAUTH_REQUIRED = "reauth_required"


class RefreshLocks:
    """
    One asyncio.Lock per (user, provider).

    Providers invalidate a refresh token after its first use, so two
    overlapping refreshes for the same connection must not both run.
    Serializes within one process only.
    """

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, user_id: str, provider: str) -> asyncio.Lock:
        return self._locks[(user_id, provider)]


_refresh_locks = RefreshLocks()


class TokenLifecycleManager:
    """
    Persist connection tokens and keep access tokens fresh.

    Refresh failures never delete the connection; it is marked
    REAUTH_REQUIRED instead. Only an explicit expired-token signal from the
    data API leads to teardown().
    """

    def __init__(
        self,
        db: Session,
        provider: BaseBankProvider,
        vault: CredentialVault,
        refresh_skew: timedelta = DEFAULT_REFRESH_SKEW,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[RefreshLocks] = None
    ):
        self.connections = ConnectionStore(db)
        self.provider = provider
        self.vault = vault
        self.refresh_skew = refresh_skew
        self._clock = clock
        self._locks = locks or _refresh_locks

    def get_connection(self, user_id: str) -> Optional[BankConnection]:
        return self.connections.get_connection(user_id, self.provider.name)

    def store(self, user_id: str, token_response: TokenResponse) -> BankConnection:
        """
        Upsert the connection from a token endpoint response.

        A response without a refresh token keeps the one already stored.
        """
        expires_at = None
        if token_response.expires_in:
            expires_at = self._clock() + timedelta(seconds=token_response.expires_in)

        values = {
            'access_token': token_response.access_token,
            'token_expires_at': expires_at,
            'status': BankConnectionStatus.ACTIVE,
            'connection_error': None,
        }

        if token_response.refresh_token:
            secret = self.vault.encrypt(token_response.refresh_token)
            values.update({
                'encrypted_refresh_token': secret.ciphertext,
                'refresh_token_iv': secret.iv,
                'refresh_token_auth_tag': secret.auth_tag,
            })

        connection = self.connections.save_connection(user_id, self.provider.name, values)
        logger.info(f"Stored {self.provider.name} connection for user {user_id} (expires {expires_at})")
        return connection

    def _needs_refresh(self, connection: BankConnection) -> bool:
        expires_at = as_utc(connection.token_expires_at)
        if expires_at is None:
            return False
        return expires_at - self._clock() < self.refresh_skew

    async def get_valid_access_token(self, user_id: str) -> Optional[str]:
        """
        Return a usable access token for the user.

        Returns the cached token without any network call when it is not
        close to expiry. Otherwise refreshes once (serialized per user and
        provider) and returns the new token.

        Returns:
            Access token, or None if not connected or the refresh failed

        Raises:
            AuthTagError: If the stored refresh token fails authentication
        """
        connection = self.get_connection(user_id)
        if connection is None:
            return None

        if not self._needs_refresh(connection) or not connection.encrypted_refresh_token:
            return connection.access_token

        async with self._locks.get(user_id, self.provider.name):
            # Another coroutine may have refreshed while we waited
            self.connections.db.refresh(connection)
            if not self._needs_refresh(connection):
                return connection.access_token

            refresh_token = self.vault.decrypt_text(EncryptedSecret(
                ciphertext=connection.encrypted_refresh_token,
                iv=connection.refresh_token_iv,
                auth_tag=connection.refresh_token_auth_tag
            ))

            try:
                token_response = await self.provider.refresh(refresh_token)
            except (TokenRefreshError, httpx.HTTPError) as e:
                logger.warning(f"Token refresh failed for {self.provider.name}/{user_id}: {e}")
                self.connections.mark_reauth_required(connection, f"Refresh failed: {e}")
                return None

            self.store(user_id, token_response)
            logger.info(f"Refreshed {self.provider.name} token for user {user_id}")
            return token_response.access_token

    def get_state(self, user_id: str) -> ConnectionState:
        connection = self.get_connection(user_id)
        if connection is None:
            return ConnectionState.DISCONNECTED
        if connection.status == BankConnectionStatus.REAUTH_REQUIRED:
            return ConnectionState.REAUTH_REQUIRED
        if self._needs_refresh(connection):
            return ConnectionState.NEEDS_REFRESH
        return ConnectionState.CONNECTED

    async def disconnect(self, user_id: str) -> bool:
        """
        Revoke (best effort) and delete the connection and its accounts.

        Historical transactions are retained.

        Returns:
            True if a connection existed
        """
        connection = self.get_connection(user_id)
        if connection is None:
            return False

        try:
            await self.provider.revoke_token(connection.access_token)
        except Exception as e:
            # Connection is deleted locally regardless
            logger.warning(f"Token revocation failed for {self.provider.name}/{user_id}: {e}")

        self.connections.delete_connection(user_id, self.provider.name)
        logger.info(f"Disconnected {self.provider.name} for user {user_id}")
        return True

    def teardown(self, user_id: str) -> None:
        """Delete the connection after the aggregator reported the token expired."""
        if self.connections.delete_connection(user_id, self.provider.name):
            logger.warning(f"Tore down {self.provider.name} connection for user {user_id}: access token rejected")
