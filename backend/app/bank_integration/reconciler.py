"""
Sync Reconciler

Pulls accounts, balances and transactions from the aggregator and
reconciles them into the canonical transaction store.

Main workflow:
1. Resolve a valid access token
2. Fetch the account list once
3. Per account (concurrently, bounded): upsert balance, fetch and upsert transactions
4. Return aggregate counts

Per-account failures are logged and reported, never raised. Every write is
idempotent, so the whole sync is safe to retry.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.models import TransactionSource, TransactionType

from .exceptions import (
    AggregatorError, ExpiredTokenError, FetchError, ForbiddenFetchError, PartialSyncError, SyncTimeoutError,
    TokenExpiredError
)
from .providers.base import BaseBankProvider
from .providers.responses import AccountBalance, AggregatorAccount, AggregatorTransaction
from .store import ConnectionStore
from .timeutils import utcnow
from .token_lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Other"
CENTS = Decimal("0.01")


@dataclass
class SyncResult:
    accounts: int = 0
    inserted: int = 0
    skipped: int = 0
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    failed_accounts: List[PartialSyncError] = field(default_factory=list)

    @property
    def date_range(self) -> Dict[str, Optional[str]]:
        return {
            'from': self.from_date.isoformat() if self.from_date else None,
            'to': self.to_date.isoformat() if self.to_date else None,
        }


@dataclass
class _AccountOutcome:
    inserted: int = 0
    skipped: int = 0
    failures: List[PartialSyncError] = field(default_factory=list)


def normalize_transaction(
    tx: AggregatorTransaction,
    user_id: str,
    id_prefix: str,
    today: Optional[date] = None
) -> Dict[str, Any]:
    """
    Convert an aggregator transaction into canonical transaction values.

    - id: provider prefix + external id (stable across syncs)
    - negative amount = money out (expense), otherwise income; stored positive
    - category defaults to "Other"
    - description: merchant name, then raw description, then empty

    Example:
        >>> values = normalize_transaction(tx, "user-1", "tl_")
        >>> values['type'], values['amount']
        (<TransactionType.EXPENSE: 'expense'>, Decimal('12.50'))
    """
    amount = Decimal(tx.amount)
    tx_type = TransactionType.EXPENSE if amount < 0 else TransactionType.INCOME

    tx_date = None
    if tx.timestamp:
        try:
            tx_date = date.fromisoformat(tx.timestamp[:10])
        except ValueError:
            logger.warning(f"Transaction {tx.transaction_id} has unparseable timestamp {tx.timestamp!r}")
    if tx_date is None:
        tx_date = today or date.today()

    return {
        'id': f"{id_prefix}{tx.transaction_id}",
        'user_id': user_id,
        'type': tx_type,
        'amount': abs(amount).quantize(CENTS),
        'date': tx_date,
        'category': tx.transaction_category or DEFAULT_CATEGORY,
        'description': (tx.merchant_name or tx.description or '').strip(),
        'source': TransactionSource.BANK,
    }


class SyncReconciler:
    """
    Orchestrates fetch-accounts → fetch-balances → fetch-transactions →
    idempotent upsert for one user's connection.
    """

    def __init__(
        self,
        db: Session,
        provider: BaseBankProvider,
        lifecycle: TokenLifecycleManager,
        max_concurrency: int = 4,
        lookback_years: int = 2,
        timeout: Optional[float] = 60.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = ConnectionStore(db)
        self.provider = provider
        self.lifecycle = lifecycle
        self.max_concurrency = max(1, max_concurrency)
        self.lookback_years = lookback_years
        self.timeout = timeout
        self._clock = clock

    def default_window(self) -> tuple:
        """[today − lookback, today]; full backfill on first connect, bounded after."""
        today = self._clock().date()
        try:
            start = today.replace(year=today.year - self.lookback_years)
        except ValueError:
            # 29 February
            start = today.replace(year=today.year - self.lookback_years, day=28)
        return start, today

    async def sync(
        self,
        user_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        limit_per_account: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> SyncResult:
        """
        Sync accounts and transactions for the user.

        Every attempt is stamped on the connection; a failed one also records
        its reason in connection_error.

        Args:
            user_id: Connection owner
            from_date: Start of window (default: today minus lookback)
            to_date: End of window (default: today)
            limit_per_account: Keep only the N most recent transactions per account
            timeout: Overall deadline in seconds (default: reconciler timeout)

        Returns:
            SyncResult with counts, the window used and per-account failures

        Raises:
            TokenExpiredError: No usable access token; reconnect required
            SyncTimeoutError: The deadline passed before the sync finished
            FetchError: The account list could not be fetched
        """
        timeout = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                self._run(user_id, from_date, to_date, limit_per_account),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Sync for user {user_id} timed out after {timeout}s")
            self._record_failure(user_id, f"Sync timed out after {timeout}s")
            raise SyncTimeoutError(timeout)
        except TokenExpiredError:
            self._record_failure(user_id)
            raise
        except AggregatorError as e:
            self._record_failure(user_id, str(e))
            raise

    def _record_failure(self, user_id: str, error: Optional[str] = None) -> None:
        connection = self.lifecycle.get_connection(user_id)
        if connection is not None:
            self.store.record_sync(connection, self._clock(), success=False, error=error)

    async def quick_sync(self, user_id: str, limit: int = 30, days_back: int = 60) -> SyncResult:
        """Balances plus the latest transactions from a short window."""
        today = self._clock().date()
        return await self.sync(
            user_id,
            from_date=today - timedelta(days=days_back),
            to_date=today,
            limit_per_account=limit
        )

    async def _run(
        self,
        user_id: str,
        from_date: Optional[date],
        to_date: Optional[date],
        limit_per_account: Optional[int]
    ) -> SyncResult:
        access_token = await self.lifecycle.get_valid_access_token(user_id)
        if not access_token:
            raise TokenExpiredError("No valid bank connection. Please reconnect your bank.")

        default_from, default_to = self.default_window()
        result = SyncResult(from_date=from_date or default_from, to_date=to_date or default_to)
        logger.info(f"Syncing {self.provider.name} for user {user_id} from {result.from_date} to {result.to_date}")

        try:
            accounts = await self.provider.list_accounts(access_token)
        except ExpiredTokenError:
            self.lifecycle.teardown(user_id)
            raise TokenExpiredError("Access token expired. Please reconnect your bank.")

        result.accounts = len(accounts)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_account(account: AggregatorAccount) -> _AccountOutcome:
            async with semaphore:
                return await self._sync_account(
                    user_id, access_token, account, result.from_date, result.to_date, limit_per_account
                )

        outcomes = await asyncio.gather(*(run_account(account) for account in accounts))

        for outcome in outcomes:
            result.inserted += outcome.inserted
            result.skipped += outcome.skipped
            result.failed_accounts.extend(outcome.failures)

        connection = self.lifecycle.get_connection(user_id)
        if connection is not None:
            self.store.record_sync(connection, self._clock(), success=True)

        logger.info(
            f"Sync complete for user {user_id}: {result.inserted} new, {result.skipped} existing, "
            f"{len(result.failed_accounts)} account failures"
        )
        return result

    async def _sync_account(
        self,
        user_id: str,
        access_token: str,
        account: AggregatorAccount,
        from_date: date,
        to_date: date,
        limit: Optional[int]
    ) -> _AccountOutcome:
        outcome = _AccountOutcome()
        label = account.name or account.account_id

        balance: Optional[AccountBalance] = None
        try:
            balance = await self.provider.get_balance(access_token, account.account_id)
        except (FetchError, ExpiredTokenError) as e:
            logger.error(f"Failed to fetch balance for account {label}: {e}")
            outcome.failures.append(PartialSyncError(account.account_id, "balance", str(e)))

        try:
            self.store.upsert_account(user_id, self.provider.name, account, balance)
        except SQLAlchemyError as e:
            self._store_failure(outcome, account, e)
            return outcome

        try:
            transactions = await self.provider.list_transactions(
                access_token, account.account_id, from_date, to_date
            )
        except ForbiddenFetchError as e:
            logger.info(f"Skipping transactions for {label}: bank may not support transaction access")
            outcome.failures.append(PartialSyncError(account.account_id, "transactions", str(e)))
            return outcome
        except (FetchError, ExpiredTokenError) as e:
            logger.error(f"Failed to sync transactions for account {label}: {e}")
            outcome.failures.append(PartialSyncError(account.account_id, "transactions", str(e)))
            return outcome

        if limit is not None:
            transactions = sorted(transactions, key=lambda t: t.timestamp or '', reverse=True)[:limit]

        logger.info(f"Processing {len(transactions)} transactions for account {label}")
        today = self._clock().date()

        for tx in transactions:
            values = normalize_transaction(tx, user_id, self.provider.transaction_id_prefix, today)

            try:
                if self.store.transaction_exists(values['id']):
                    outcome.skipped += 1
                elif self.store.insert_transaction(values):
                    outcome.inserted += 1
                else:
                    outcome.skipped += 1
            except SQLAlchemyError as e:
                self._store_failure(outcome, account, e)
                return outcome

        return outcome

    def _store_failure(self, outcome: _AccountOutcome, account: AggregatorAccount, error: SQLAlchemyError) -> None:
        # Later accounts still get a clean session
        self.store.rollback()
        logger.error(f"Database error while storing account {account.name or account.account_id}: {error}")
        outcome.failures.append(PartialSyncError(account.account_id, "store", str(error)))
