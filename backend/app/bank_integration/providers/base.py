"""
Abstract base class for bank aggregator providers

Defines the common interface that all aggregators must implement.
"""

from abc import ABC, abstractmethod
from typing import List
from datetime import date

from .responses import AccountBalance, AggregatorAccount, AggregatorTransaction, TokenResponse


class BaseBankProvider(ABC):
    """
    Abstract base class for bank aggregator providers.

    Callers rely on the typed errors from exceptions.py: token endpoints
    raise TokenExchangeError / TokenRefreshError, data endpoints raise
    ExpiredTokenError on 401 and FetchError otherwise.
    """

    #: Slug used in URLs and on stored rows, e.g. 'truelayer'
    name: str = ""

    #: Prefix that makes external transaction ids globally unique
    transaction_id_prefix: str = ""

    @abstractmethod
    def build_authorize_url(self, state: str) -> str:
        """
        Build the aggregator's authorization URL.

        Args:
            state: CSRF protection token

        Returns:
            Full URL to redirect the user to
        """
        pass

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenResponse:
        """
        Exchange authorization code for access/refresh tokens.

        Raises:
            TokenExchangeError: On a non-2xx response
        """
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Refresh an access token.

        Raises:
            TokenRefreshError: On a non-2xx response
        """
        pass

    @abstractmethod
    async def list_accounts(self, access_token: str) -> List[AggregatorAccount]:
        """
        Fetch accounts the user granted access to.

        Raises:
            ExpiredTokenError: On 401
            FetchError: On any other failure
        """
        pass

    @abstractmethod
    async def get_balance(self, access_token: str, account_id: str) -> AccountBalance:
        """Fetch the balance of one account."""
        pass

    @abstractmethod
    async def list_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: date,
        to_date: date
    ) -> List[AggregatorTransaction]:
        """
        Fetch transactions for an account within date range (all pages).

        Args:
            access_token: Valid OAuth access token
            account_id: Account identifier from provider
            from_date: Start date (inclusive)
            to_date: End date (inclusive)
        """
        pass

    async def revoke_token(self, access_token: str) -> bool:
        """
        Revoke the token at the aggregator (optional).

        Returns:
            True if revocation succeeded, False if unsupported
        """
        return False
