"""
Aggregator response types

Explicit models for each aggregator endpoint, with the defaulting rules
applied in one place instead of at every call site.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class TokenResponse(BaseModel):
    """Token endpoint payload (authorization_code and refresh_token grants)."""
    model_config = ConfigDict(extra="ignore")

    access_token: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None


class AccountNumber(BaseModel):
    model_config = ConfigDict(extra="ignore")

    number: Optional[str] = None
    sort_code: Optional[str] = None
    iban: Optional[str] = None


class AggregatorAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str
    account_type: Optional[str] = None
    display_name: Optional[str] = None
    currency: Optional[str] = None
    account_number: Optional[AccountNumber] = None

    @property
    def name(self) -> Optional[str]:
        """Display name, falling back to the account number."""
        if self.display_name:
            return self.display_name
        if self.account_number and self.account_number.number:
            return self.account_number.number
        return None


class AccountBalance(BaseModel):
    model_config = ConfigDict(extra="ignore")

    currency: Optional[str] = None
    current: Optional[Decimal] = None
    available: Optional[Decimal] = None

    @property
    def effective_available(self) -> Optional[Decimal]:
        """Available balance, falling back to the current balance."""
        return self.available if self.available is not None else self.current

    @classmethod
    def from_results(cls, results: List[dict]) -> "AccountBalance":
        # Balance endpoint wraps a single entry in a results list
        return cls.model_validate(results[0]) if results else cls()


class AggregatorTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction_id: str
    timestamp: Optional[str] = None
    description: Optional[str] = None
    amount: Decimal
    currency: Optional[str] = None
    transaction_type: Optional[str] = None
    transaction_category: Optional[str] = None
    merchant_name: Optional[str] = None
