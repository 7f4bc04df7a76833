from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List
from datetime import date, datetime


class ConnectResponse(BaseModel):
    url: str


class ConnectionStatus(BaseModel):
    connected: bool
    state: str
    connected_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    connection_error: Optional[str] = None


class SyncRequest(BaseModel):
    from_date: Optional[date] = None
    to_date: Optional[date] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("from_date must not be after to_date")
        return self


class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None


class FailedAccount(BaseModel):
    account_id: str
    stage: str
    reason: str


class SyncSummary(BaseModel):
    success: bool = True
    mode: str = "full"
    accounts: int
    inserted: int
    skipped: int
    date_range: DateRange
    failed_accounts: List[FailedAccount] = []


class AccountBalanceOut(BaseModel):
    name: Optional[str] = None
    balance: Optional[float] = None
    available: Optional[float] = None
    currency: Optional[str] = None


class BalanceResponse(BaseModel):
    total_balance: Optional[float] = None
    available_balance: Optional[float] = None
    currency: str
    accounts: List[AccountBalanceOut] = []
    source: str


class CachedBalanceResponse(BaseModel):
    total_balance: Optional[float] = None
    available_balance: Optional[float] = None
    currency: str
    last_synced_at: Optional[datetime] = None
    source: str
