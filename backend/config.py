from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List


# TrueLayer URLs per environment
SANDBOX_AUTH_URL = "https://auth.truelayer-sandbox.com"
SANDBOX_DATA_URL = "https://api.truelayer-sandbox.com"
PRODUCTION_AUTH_URL = "https://auth.truelayer.com"
PRODUCTION_DATA_URL = "https://api.truelayer.com"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    database_url: str = "sqlite:///./banking.db"
    secret_key: str = ""
    algorithm: str = "HS256"
    log_level: str = "INFO"

    # Where the OAuth callback sends the user afterwards
    frontend_url: str = "http://localhost:5173"

    # TrueLayer aggregator settings
    truelayer_env: str = "sandbox"
    truelayer_client_id: str = ""
    truelayer_client_secret: str = ""
    truelayer_redirect_uri: str = ""
    truelayer_scopes: str = "info accounts balance transactions offline_access"

    # 32-byte AES-256-GCM key, hex encoded (64 characters)
    token_encryption_key: str = ""

    # OAuth / token lifecycle
    oauth_state_ttl_minutes: int = 15
    oauth_state_store: str = "database"  # "database" or "memory"
    token_refresh_skew_minutes: int = 5

    # Sync behaviour
    sync_timeout_seconds: float = 60.0
    sync_max_concurrency: int = 4
    sync_lookback_years: int = 2
    auto_sync_interval_minutes: int = 360

    @property
    def is_sandbox(self) -> bool:
        return self.truelayer_env.lower() != "production"

    @property
    def truelayer_auth_url(self) -> str:
        return SANDBOX_AUTH_URL if self.is_sandbox else PRODUCTION_AUTH_URL

    @property
    def truelayer_token_url(self) -> str:
        return f"{self.truelayer_auth_url}/connect/token"

    @property
    def truelayer_data_url(self) -> str:
        return SANDBOX_DATA_URL if self.is_sandbox else PRODUCTION_DATA_URL

    def missing_bank_settings(self) -> List[str]:
        """Names of the required environment variables that are unset."""
        required = {
            "SECRET_KEY": self.secret_key,
            "TRUELAYER_CLIENT_ID": self.truelayer_client_id,
            "TRUELAYER_CLIENT_SECRET": self.truelayer_client_secret,
            "TRUELAYER_REDIRECT_URI": self.truelayer_redirect_uri,
            "TRUELAYER_SCOPES": self.truelayer_scopes,
            "TOKEN_ENCRYPTION_KEY": self.token_encryption_key,
        }
        return [name for name, value in required.items() if not value]

    def validate_bank_settings(self) -> None:
        """
        Fail fast when the bank integration cannot run safely.

        Raises:
            ConfigError: If any required secret is missing, the environment
                flag is unknown or the state store backend is unknown
        """
        from backend.app.bank_integration.exceptions import ConfigError

        missing = self.missing_bank_settings()
        if missing:
            raise ConfigError(
                f"Bank integration is not configured. Missing: {', '.join(missing)}"
            )

        if self.truelayer_env.lower() not in ("sandbox", "production"):
            raise ConfigError(
                f"TRUELAYER_ENV must be 'sandbox' or 'production', got '{self.truelayer_env}'"
            )

        if self.oauth_state_store not in ("database", "memory"):
            raise ConfigError(
                f"OAUTH_STATE_STORE must be 'database' or 'memory', got '{self.oauth_state_store}'"
            )


@lru_cache()
def get_settings():
    return Settings()
