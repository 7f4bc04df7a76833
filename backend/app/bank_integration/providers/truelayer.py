"""
TrueLayer Provider Implementation

TrueLayer is a UK/EU Open Banking aggregator exposing a standard OAuth2
authorization-code flow and a bearer-authenticated Data API.

Documentation: https://docs.truelayer.com/docs/data-api-basics
"""

import httpx
import logging
from typing import Any, Dict, List, Optional, Type
from datetime import date
from urllib.parse import urlencode

from pydantic import ValidationError

from backend.config import Settings
from ..exceptions import (
    AggregatorError, ExpiredTokenError, FetchError, ForbiddenFetchError,
    TokenExchangeError, TokenRefreshError
)
from .base import BaseBankProvider
from .responses import AccountBalance, AggregatorAccount, AggregatorTransaction, TokenResponse

logger = logging.getLogger(__name__)

# Mock banks are only available in the sandbox
SANDBOX_PROVIDERS = "uk-ob-all uk-oauth-all uk-cs-mock"

# Safety limit to prevent infinite pagination loops
MAX_PAGES = 100


class TrueLayerProvider(BaseBankProvider):
    """
    TrueLayer Auth + Data API integration.

    Every call opens a short-lived httpx.AsyncClient; pass a transport to
    route requests elsewhere (e.g. httpx.MockTransport in tests).
    """

    name = "truelayer"
    transaction_id_prefix = "tl_"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0
    ):
        self.client_id = settings.truelayer_client_id
        self.client_secret = settings.truelayer_client_secret
        self.redirect_uri = settings.truelayer_redirect_uri
        self.scopes = settings.truelayer_scopes
        self.is_sandbox = settings.is_sandbox

        self.auth_url = settings.truelayer_auth_url
        self.token_url = settings.truelayer_token_url
        self.data_url = settings.truelayer_data_url

        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def build_authorize_url(self, state: str) -> str:
        """
        Build the hosted auth flow URL.

        Deterministic for a given configuration and state. In the sandbox the
        mock providers are enabled so the flow can be tested end to end.
        """
        params = {
            'response_type': 'code',
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'scope': self.scopes,
            'state': state,
        }
        if self.is_sandbox:
            params['providers'] = SANDBOX_PROVIDERS

        return f"{self.auth_url}/?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        """
        Exchange authorization code for access/refresh tokens.

        Raises:
            TokenExchangeError: With the HTTP status on rejection
        """
        form = {
            'grant_type': 'authorization_code',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'redirect_uri': self.redirect_uri,
            'code': code,
        }
        return await self._token_request(form, TokenExchangeError, "Token exchange")

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Refresh an access token.

        TrueLayer rotates refresh tokens: the one passed in is invalid after
        the first successful use.

        Raises:
            TokenRefreshError: With the HTTP status on rejection
        """
        form = {
            'grant_type': 'refresh_token',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'refresh_token': refresh_token,
        }
        return await self._token_request(form, TokenRefreshError, "Token refresh")

    async def _token_request(
        self,
        form: Dict[str, str],
        error_cls: Type[AggregatorError],
        label: str
    ) -> TokenResponse:
        try:
            async with self._client() as client:
                response = await client.post(
                    self.token_url,
                    data=form,
                    headers={'Accept': 'application/json'}
                )
        except httpx.HTTPError as e:
            logger.error(f"TrueLayer {label.lower()} request failed: {e.__class__.__name__}")
            raise error_cls(f"{label} request failed: {e}")

        if not response.is_success:
            # Body may echo credentials back, log the status only
            logger.error(f"TrueLayer {label.lower()} failed: {response.status_code}")
            raise error_cls(f"{label} failed: {response.status_code}", status=response.status_code)

        try:
            return TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            raise error_cls(f"{label} returned an unexpected payload", status=response.status_code)

    async def list_accounts(self, access_token: str) -> List[AggregatorAccount]:
        """
        Fetch connected accounts.

        Raises:
            ExpiredTokenError: On 401, so callers can force re-authorization
            FetchError: On any other failure
        """
        data = await self._get_json(f"{self.data_url}/data/v1/accounts", access_token, "accounts")
        return self._parse_results(data, AggregatorAccount, "accounts")

    async def get_balance(self, access_token: str, account_id: str) -> AccountBalance:
        data = await self._get_json(
            f"{self.data_url}/data/v1/accounts/{account_id}/balance",
            access_token,
            "balance"
        )
        try:
            return AccountBalance.from_results(data.get('results') or [])
        except ValidationError as e:
            raise FetchError(f"Unexpected balance payload: {e.error_count()} errors")

    async def list_transactions(
        self,
        access_token: str,
        account_id: str,
        from_date: date,
        to_date: date
    ) -> List[AggregatorTransaction]:
        """
        Fetch transactions for an account, following `next` page links.

        Raises:
            ForbiddenFetchError: On 403 (bank or account does not support
                transaction history, or consent was not granted)
        """
        params = urlencode({'from': from_date.isoformat(), 'to': to_date.isoformat()})
        url = f"{self.data_url}/data/v1/accounts/{account_id}/transactions?{params}"

        all_transactions: List[AggregatorTransaction] = []
        page_num = 0

        while url:
            page_num += 1
            data = await self._get_json(url, access_token, "transactions")
            all_transactions.extend(self._parse_results(data, AggregatorTransaction, "transactions"))

            url = data.get('next')
            if page_num >= MAX_PAGES and url:
                logger.warning(f"Reached page limit of {MAX_PAGES} for account {account_id}, stopping pagination")
                break

        logger.info(f"Fetched {len(all_transactions)} transactions for account {account_id} ({page_num} pages)")
        return all_transactions

    async def revoke_token(self, access_token: str) -> bool:
        """Delete the connection at TrueLayer. Best effort."""
        try:
            async with self._client() as client:
                response = await client.delete(
                    f"{self.auth_url}/api/delete",
                    headers={'Authorization': f'Bearer {access_token}'}
                )
        except httpx.HTTPError as e:
            logger.warning(f"TrueLayer token revocation failed: {e.__class__.__name__}")
            return False

        if not response.is_success:
            logger.warning(f"TrueLayer token revocation returned {response.status_code}")
        return response.is_success

    async def _get_json(self, url: str, access_token: str, resource: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(
                    url,
                    headers={
                        'Authorization': f'Bearer {access_token}',
                        'Accept': 'application/json'
                    }
                )
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch {resource}: {e.__class__.__name__}")

        if response.status_code == 401:
            raise ExpiredTokenError()
        if response.status_code == 403:
            logger.info(f"TrueLayer 403 for {resource}: {response.text[:200]}")
            raise ForbiddenFetchError(f"Access to {resource} denied (403)")
        if not response.is_success:
            raise FetchError(f"Failed to fetch {resource}: {response.status_code}", status=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise FetchError(f"Failed to fetch {resource}: response is not JSON", status=response.status_code)

        if not isinstance(data, dict):
            raise FetchError(f"Expected object from {resource} endpoint, got {type(data).__name__}")
        return data

    @staticmethod
    def _parse_results(data: Dict[str, Any], model, resource: str) -> list:
        try:
            return [model.model_validate(item) for item in data.get('results') or []]
        except ValidationError as e:
            raise FetchError(f"Unexpected {resource} payload: {e.error_count()} errors")
