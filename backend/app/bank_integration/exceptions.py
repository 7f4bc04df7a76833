"""
Bank Integration Errors

Typed failures raised by the bank integration layer. Routes translate them
into user-actionable responses (reconnect, restart connect flow, retry).
"""

from typing import Optional


class BankIntegrationError(Exception):
    """Base class for all bank integration failures."""
    pass


class ConfigError(BankIntegrationError):
    """Required configuration is missing or invalid. Fatal at startup."""
    pass


class UnsupportedProviderError(BankIntegrationError):
    """Requested aggregator is not known to this deployment."""

    def __init__(self, provider: str):
        super().__init__(f"Unsupported provider: {provider}")
        self.provider = provider


class CsrfStateError(BankIntegrationError):
    """OAuth state is missing, expired or already consumed. Restart the connect flow."""
    pass


class AuthTagError(BankIntegrationError):
    """Stored secret failed authentication (tampered or corrupted). No auto-heal."""
    pass


class AggregatorError(BankIntegrationError):
    """Base class for failures reported by the aggregator."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TokenExchangeError(AggregatorError):
    """Aggregator rejected the authorization code."""
    pass


class TokenRefreshError(AggregatorError):
    """Aggregator rejected the refresh token."""
    pass


class ExpiredTokenError(AggregatorError):
    """Data API answered 401: the access token is no longer accepted."""

    def __init__(self, message: str = "Access token expired or invalid"):
        super().__init__(message, status=401)


class FetchError(AggregatorError):
    """Data API call failed for any reason other than an expired token."""
    pass


class ForbiddenFetchError(FetchError):
    """Data API answered 403 (bank or account does not grant this data)."""

    def __init__(self, message: str):
        super().__init__(message, status=403)


class TokenExpiredError(BankIntegrationError):
    """No usable access token for the user. Reconnect required."""
    pass


class SyncTimeoutError(BankIntegrationError):
    """Sync did not finish within the caller-supplied timeout."""

    def __init__(self, timeout: float):
        super().__init__(f"Sync did not complete within {timeout:g} seconds")
        self.timeout = timeout


class PartialSyncError(BankIntegrationError):
    """
    Informational record of one account that could not be fully synced.

    Collected into the sync result rather than raised, so the rest of the
    sync still reports success.
    """

    def __init__(self, account_id: str, stage: str, reason: str):
        super().__init__(f"Account {account_id}: {stage} failed: {reason}")
        self.account_id = account_id
        self.stage = stage
        self.reason = reason
