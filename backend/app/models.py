from sqlalchemy import Column, Integer, String, DateTime, Date, DECIMAL, Text, UniqueConstraint, Index, Enum as SQLEnum
from sqlalchemy.sql import func
import enum
from backend.database import Base


class BankConnectionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    REAUTH_REQUIRED = "REAUTH_REQUIRED"


class TransactionType(str, enum.Enum):
    INCOME = "income"
    EXPENSE = "expense"


class TransactionSource(str, enum.Enum):
    MANUAL = "manual"
    BANK = "bank"


class BankConnection(Base):
    __tablename__ = "bank_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_bank_connections_user_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    provider = Column(String(50), nullable=False)

    # OAuth tokens (refresh token encrypted with AES-256-GCM)
    access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=True)
    refresh_token_iv = Column(String(32), nullable=True)
    refresh_token_auth_tag = Column(String(32), nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Connection status
    status = Column(SQLEnum(BankConnectionStatus), default=BankConnectionStatus.ACTIVE, nullable=False)
    connection_error = Column(Text, nullable=True)

    # Sync bookkeeping
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_successful_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class BankAccount(Base):
    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "provider_account_id", name="uq_bank_accounts_user_provider_account"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    provider = Column(String(50), nullable=False)
    provider_account_id = Column(String(255), nullable=False)

    account_name = Column(String(255), nullable=True)
    account_type = Column(String(50), nullable=True)
    currency = Column(String(3), nullable=True)
    balance = Column(DECIMAL(15, 2), nullable=True)
    available_balance = Column(DECIMAL(15, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Transaction(Base):
    """Canonical transaction shared with manual entry and file imports."""
    __tablename__ = "transactions"
    __table_args__ = (
        Index("idx_transactions_user_source", "user_id", "source"),
    )

    # Deterministic for synced rows (provider prefix + external id)
    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    type = Column(SQLEnum(TransactionType, values_callable=lambda e: [m.value for m in e]), nullable=False)
    amount = Column(DECIMAL(15, 2), nullable=False)
    date = Column(Date, nullable=False)
    category = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    source = Column(
        SQLEnum(TransactionSource, values_callable=lambda e: [m.value for m in e]),
        default=TransactionSource.MANUAL,
        nullable=False
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class OAuthState(Base):
    __tablename__ = "oauth_states"

    id = Column(Integer, primary_key=True, index=True)
    state_token = Column(String(64), unique=True, nullable=False)
    user_id = Column(String(255), nullable=False)
    provider = Column(String(50), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False, index=True)
