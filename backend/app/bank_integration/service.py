"""
Bank Integration Service

Main orchestration service that handles:
- Provider selection and initialization
- OAuth connect flow (state issue, callback, code exchange)
- Connection status and disconnect
- Transaction synchronization
- Live and cached balances
"""

import logging
import re
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Type

import httpx
from sqlalchemy.orm import Session

from backend.config import Settings, get_settings

from .encryption import CredentialVault
from .exceptions import AggregatorError, CsrfStateError, UnsupportedProviderError
from .oauth_state import DatabaseStateStore, InMemoryStateStore, OAuthStateBroker, StateStore
from .providers.base import BaseBankProvider
from .providers.truelayer import TrueLayerProvider
from .reconciler import SyncReconciler, SyncResult
from .store import ConnectionStore
from .timeutils import as_utc
from .token_lifecycle import ConnectionState, TokenLifecycleManager

logger = logging.getLogger(__name__)

PROVIDERS: Dict[str, Type[BaseBankProvider]] = {
    'truelayer': TrueLayerProvider,
}

DEFAULT_CURRENCY = "GBP"

# Monzo and friends expose savings pots as separate accounts
NON_MAIN_ACCOUNT = re.compile(r"\b(pot|savings|saving|vault|jar)\b", re.IGNORECASE)
MAIN_ACCOUNT_HINT = re.compile(r"\b(current|personal|main)\b", re.IGNORECASE)

# Shared by every request when OAUTH_STATE_STORE=memory
_memory_state_store = InMemoryStateStore()


def select_main_account(accounts: Sequence[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Pick the account a user thinks of as "my balance".

    First account that is not a pot/savings/vault/jar, then the first whose
    name says current/personal/main, then simply the first.
    """
    if not accounts:
        return None

    for account in accounts:
        if not NON_MAIN_ACCOUNT.search(account.get('name') or ''):
            return account

    for account in accounts:
        if MAIN_ACCOUNT_HINT.search(account.get('name') or ''):
            return account

    return accounts[0]


def _as_float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


class BankIntegrationService:
    """
    Main service for bank integration.

    Provides high-level operations for:
    - Starting OAuth flows
    - Handling OAuth callbacks
    - Syncing transactions
    - Reading balances
    - Disconnecting banks
    """

    def __init__(
        self,
        db: Session,
        provider_name: str,
        settings: Optional[Settings] = None,
        provider: Optional[BaseBankProvider] = None,
        state_store: Optional[StateStore] = None,
        vault: Optional[CredentialVault] = None
    ):
        """
        Initialize service with database session and provider.

        Args:
            db: SQLAlchemy database session
            provider_name: Aggregator name from the URL (e.g. "truelayer")
            settings: Application settings (default: get_settings())
            provider: Pre-built provider instance, skips the registry lookup
            state_store: OAuth state storage (default: per OAUTH_STATE_STORE)
            vault: Refresh token encryption (default: TOKEN_ENCRYPTION_KEY)

        Raises:
            UnsupportedProviderError: If provider_name is not registered
            ConfigError: If the encryption key is unusable
        """
        self.db = db
        self.settings = settings or get_settings()
        self.provider = provider or self._get_provider(provider_name)
        self.store = ConnectionStore(db)

        self.vault = vault or CredentialVault.from_hex(self.settings.token_encryption_key)
        self.state_broker = OAuthStateBroker(
            state_store or self._get_state_store(),
            provider=self.provider.name,
            ttl=timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        )
        self.lifecycle = TokenLifecycleManager(
            db,
            self.provider,
            self.vault,
            refresh_skew=timedelta(minutes=self.settings.token_refresh_skew_minutes)
        )
        self.reconciler = SyncReconciler(
            db,
            self.provider,
            self.lifecycle,
            max_concurrency=self.settings.sync_max_concurrency,
            lookback_years=self.settings.sync_lookback_years,
            timeout=self.settings.sync_timeout_seconds
        )

    def _get_provider(self, provider_name: str) -> BaseBankProvider:
        """
        Create provider instance based on name.

        Raises:
            UnsupportedProviderError: If provider not registered
        """
        provider_class = PROVIDERS.get((provider_name or '').lower())
        if provider_class is None:
            raise UnsupportedProviderError(provider_name)
        return provider_class(self.settings)

    def _get_state_store(self) -> StateStore:
        if self.settings.oauth_state_store == "memory":
            return _memory_state_store
        return DatabaseStateStore(self.db)

    # Connect flow

    async def start_connect(self, user_id: str) -> str:
        """
        Issue a CSRF state for the user and build the authorization URL.

        Example:
            >>> url = await service.start_connect("user-1")
            >>> # Redirect user to url
        """
        state = await self.state_broker.issue(user_id)
        logger.info(f"Starting {self.provider.name} connect flow for user {user_id}")
        return self.provider.build_authorize_url(state)

    async def handle_callback(self, code: str, state: Optional[str]) -> str:
        """
        Validate the state, exchange the code and persist the connection.

        Returns:
            The user id bound to the state

        Raises:
            CsrfStateError: If state is missing, expired or already used
            TokenExchangeError: If the aggregator rejects the code
        """
        user_id = await self.state_broker.validate(state)
        if not user_id:
            raise CsrfStateError("Invalid or expired state. Please start the connection again.")

        token_response = await self.provider.exchange_code(code)
        self.lifecycle.store(user_id, token_response)
        logger.info(f"Connected {self.provider.name} for user {user_id}")
        return user_id

    # Status

    def get_status(self, user_id: str) -> Dict[str, Any]:
        connection = self.lifecycle.get_connection(user_id)
        state = self.lifecycle.get_state(user_id)

        if connection is None:
            return {'connected': False, 'state': state.value}

        return {
            'connected': state != ConnectionState.REAUTH_REQUIRED,
            'state': state.value,
            'connected_at': as_utc(connection.created_at),
            'token_expires_at': as_utc(connection.token_expires_at),
            'last_sync_at': as_utc(connection.last_sync_at),
            'last_successful_sync_at': as_utc(connection.last_successful_sync_at),
            'connection_error': connection.connection_error,
        }

    # Sync

    async def sync(
        self,
        user_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> SyncResult:
        return await self.reconciler.sync(user_id, from_date=from_date, to_date=to_date)

    async def quick_sync(self, user_id: str, limit: int = 30, days_back: int = 60) -> SyncResult:
        return await self.reconciler.quick_sync(user_id, limit=limit, days_back=days_back)

    # Balances

    async def get_balance(self, user_id: str) -> Dict[str, Any]:
        """
        Live balances from the aggregator, falling back to stored balances.

        Every live balance fetched is written back to bank_accounts so the
        cached view stays current.

        Returns:
            {
                'total_balance': float | None,
                'available_balance': float | None,
                'currency': str,
                'accounts': [{name, balance, available, currency}],
                'source': 'live' | 'db'
            }
        """
        live = await self._fetch_live_balances(user_id)
        if live:
            main = select_main_account(live)
            logger.info(f"Live balance for user {user_id}: {len(live)} account(s), main '{main['name']}'")
            return {
                'total_balance': main['balance'],
                'available_balance': main['available'],
                'currency': main['currency'] or DEFAULT_CURRENCY,
                'accounts': live,
                'source': 'live',
            }

        stored = self._stored_balances(user_id)
        if not stored:
            return {'total_balance': None, 'available_balance': None, 'currency': DEFAULT_CURRENCY,
                    'accounts': [], 'source': 'db'}

        main = select_main_account(stored)
        return {
            'total_balance': main['balance'] if main['balance'] is not None else 0.0,
            'available_balance': main['available'] if main['available'] is not None else 0.0,
            'currency': main['currency'] or DEFAULT_CURRENCY,
            'accounts': stored,
            'source': 'db',
        }

    def get_cached_balance(self, user_id: str) -> Dict[str, Any]:
        """Last stored balance, available even after the connection is gone."""
        stored = self._stored_balances(user_id)
        if not stored:
            return {'total_balance': None, 'available_balance': None, 'currency': DEFAULT_CURRENCY,
                    'last_synced_at': None, 'source': 'cached_db'}

        main = select_main_account(stored)
        return {
            'total_balance': main['balance'],
            'available_balance': main['available'],
            'currency': main['currency'] or DEFAULT_CURRENCY,
            'last_synced_at': main['updated_at'],
            'source': 'cached_db',
        }

    async def _fetch_live_balances(self, user_id: str) -> List[Dict[str, Any]]:
        access_token = await self.lifecycle.get_valid_access_token(user_id)
        if not access_token:
            return []

        try:
            accounts = await self.provider.list_accounts(access_token)
        except (AggregatorError, httpx.HTTPError) as e:
            logger.warning(f"Live balance fetch failed for user {user_id}, falling back to DB: {e}")
            return []

        results = []
        for account in accounts:
            try:
                balance = await self.provider.get_balance(access_token, account.account_id)
            except (AggregatorError, httpx.HTTPError) as e:
                logger.error(f"Failed to fetch live balance for {account.account_id}: {e}")
                continue

            self.store.upsert_account(user_id, self.provider.name, account, balance)
            results.append({
                'name': account.name,
                'balance': _as_float(balance.current) or 0.0,
                'available': _as_float(balance.effective_available) or 0.0,
                'currency': balance.currency or account.currency or DEFAULT_CURRENCY,
            })

        return results

    def _stored_balances(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            {
                'name': row.account_name,
                'balance': _as_float(row.balance),
                'available': _as_float(row.available_balance),
                'currency': row.currency,
                'updated_at': as_utc(row.updated_at),
            }
            for row in self.store.list_accounts(user_id, self.provider.name)
        ]

    # Disconnect

    async def disconnect(self, user_id: str) -> bool:
        return await self.lifecycle.disconnect(user_id)
