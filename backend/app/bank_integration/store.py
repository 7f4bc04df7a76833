"""
Connection Store

Persistence for bank connections, synced accounts and canonical
transactions. All writes are idempotent so a whole sync can be retried.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.models import BankAccount, BankConnection, BankConnectionStatus, Transaction

from .providers.responses import AccountBalance, AggregatorAccount

logger = logging.getLogger(__name__)


class ConnectionStore:
    """
    Repository over bank_connections, bank_accounts and transactions.

    Each mutating call commits, so a failure in one account's writes never
    rolls back work already done for another account.
    """

    def __init__(self, db: Session):
        self.db = db

    # Connections

    def get_connection(self, user_id: str, provider: str) -> Optional[BankConnection]:
        return self.db.query(BankConnection).filter(
            BankConnection.user_id == user_id,
            BankConnection.provider == provider
        ).first()

    def save_connection(self, user_id: str, provider: str, values: Dict[str, Any]) -> BankConnection:
        """
        Insert or update the (user, provider) connection.

        Args:
            values: Column values to set (tokens, expiry, status)

        Returns:
            The persisted BankConnection
        """
        connection = self.get_connection(user_id, provider)
        if connection is None:
            connection = BankConnection(user_id=user_id, provider=provider)
            self.db.add(connection)

        for column, value in values.items():
            setattr(connection, column, value)

        try:
            self.db.commit()
        except IntegrityError:
            # Another request created the row first; update that one instead
            self.db.rollback()
            connection = self.get_connection(user_id, provider)
            for column, value in values.items():
                setattr(connection, column, value)
            self.db.commit()

        self.db.refresh(connection)
        return connection

    def mark_reauth_required(self, connection: BankConnection, reason: str) -> None:
        connection.status = BankConnectionStatus.REAUTH_REQUIRED
        connection.connection_error = reason
        self.db.commit()

    def record_sync(
        self,
        connection: BankConnection,
        finished_at: datetime,
        success: bool,
        error: Optional[str] = None
    ) -> None:
        """
        Stamp a finished sync attempt.

        Success clears connection_error. A failure with no error message
        leaves the existing one (e.g. a refresh failure reason) in place.
        """
        connection.last_sync_at = finished_at
        if success:
            connection.last_successful_sync_at = finished_at
            connection.connection_error = None
        elif error:
            connection.connection_error = error
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def delete_connection(self, user_id: str, provider: str) -> bool:
        """
        Delete the connection and its accounts. Transactions are kept.

        Returns:
            True if a connection existed
        """
        deleted = self.db.query(BankConnection).filter(
            BankConnection.user_id == user_id,
            BankConnection.provider == provider
        ).delete()
        self.db.query(BankAccount).filter(
            BankAccount.user_id == user_id,
            BankAccount.provider == provider
        ).delete()
        self.db.commit()
        return deleted > 0

    def list_active_connections(self, provider: Optional[str] = None) -> List[BankConnection]:
        query = self.db.query(BankConnection).filter(BankConnection.status == BankConnectionStatus.ACTIVE)
        if provider:
            query = query.filter(BankConnection.provider == provider)
        return query.order_by(BankConnection.id).all()

    # Accounts

    def list_accounts(self, user_id: str, provider: str) -> List[BankAccount]:
        """Stored accounts, oldest first (the first linked is usually the main one)."""
        return self.db.query(BankAccount).filter(
            BankAccount.user_id == user_id,
            BankAccount.provider == provider
        ).order_by(BankAccount.created_at, BankAccount.provider_account_id).all()

    def upsert_account(
        self,
        user_id: str,
        provider: str,
        account: AggregatorAccount,
        balance: Optional[AccountBalance] = None
    ) -> BankAccount:
        """
        Insert or update an account, keyed by (user, provider, account id).

        When balance is None (fetch failed) the previously stored balance is
        left untouched.
        """
        row = self.db.query(BankAccount).filter(
            BankAccount.user_id == user_id,
            BankAccount.provider == provider,
            BankAccount.provider_account_id == account.account_id
        ).first()

        if row is None:
            row = BankAccount(
                user_id=user_id,
                provider=provider,
                provider_account_id=account.account_id
            )
            self.db.add(row)

        row.account_name = account.name
        row.account_type = account.account_type
        row.currency = account.currency or (balance.currency if balance else None) or row.currency

        if balance is not None:
            row.balance = balance.current
            row.available_balance = balance.effective_available

        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent sync inserted the same account; retry as an update
            self.db.rollback()
            return self.upsert_account(user_id, provider, account, balance)

        return row

    # Transactions

    def transaction_exists(self, transaction_id: str) -> bool:
        return self.db.get(Transaction, transaction_id) is not None

    def insert_transaction(self, values: Dict[str, Any]) -> bool:
        """
        Insert a canonical transaction.

        Returns:
            True if inserted, False if the id already existed (a concurrent
            sync won the race)
        """
        self.db.add(Transaction(**values))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.debug(f"Transaction {values['id']} inserted concurrently, skipping")
            return False
        return True
