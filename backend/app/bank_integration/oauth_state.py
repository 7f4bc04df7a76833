"""
OAuth State Broker

Issues and redeems single-use CSRF state tokens that bind an OAuth redirect
to the user who started the connect flow.

Redemption is an atomic take-and-delete, so two simultaneous callbacks
carrying the same state can never both succeed. The database store is safe
across multiple app instances; the in-memory store only within one process.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from backend.app.models import OAuthState

from .timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_STATE_TTL = timedelta(minutes=15)


@dataclass(frozen=True)
class StateEntry:
    user_id: str
    provider: str
    issued_at: datetime


class StateStore(ABC):
    """Storage for pending state tokens."""

    @abstractmethod
    async def put(self, state: str, entry: StateEntry) -> None:
        pass

    @abstractmethod
    async def take(self, state: str) -> Optional[StateEntry]:
        """Atomically remove and return the entry, or None if absent."""
        pass

    @abstractmethod
    async def sweep(self, issued_before: datetime) -> int:
        """Delete entries issued before the cutoff. Returns count removed."""
        pass


class InMemoryStateStore(StateStore):
    """Lock-guarded dict. Single process only."""

    def __init__(self):
        self._entries: Dict[str, StateEntry] = {}
        self._lock = asyncio.Lock()

    async def put(self, state: str, entry: StateEntry) -> None:
        async with self._lock:
            self._entries[state] = entry

    async def take(self, state: str) -> Optional[StateEntry]:
        async with self._lock:
            return self._entries.pop(state, None)

    async def sweep(self, issued_before: datetime) -> int:
        async with self._lock:
            expired = [s for s, e in self._entries.items() if e.issued_at < issued_before]
            for state in expired:
                del self._entries[state]
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class DatabaseStateStore(StateStore):
    """
    oauth_states table. Shared by every app instance.

    take() is a single DELETE ... RETURNING statement, so the database
    decides which of two concurrent redemptions gets the row.
    """

    def __init__(self, db: Session):
        self.db = db

    async def put(self, state: str, entry: StateEntry) -> None:
        self.db.add(OAuthState(
            state_token=state,
            user_id=entry.user_id,
            provider=entry.provider,
            issued_at=entry.issued_at
        ))
        self.db.commit()

    async def take(self, state: str) -> Optional[StateEntry]:
        row = self.db.execute(
            delete(OAuthState)
            .where(OAuthState.state_token == state)
            .returning(OAuthState.user_id, OAuthState.provider, OAuthState.issued_at)
        ).first()
        self.db.commit()

        if row is None:
            return None
        return StateEntry(user_id=row.user_id, provider=row.provider, issued_at=as_utc(row.issued_at))

    async def sweep(self, issued_before: datetime) -> int:
        deleted = self.db.query(OAuthState).filter(
            OAuthState.issued_at < issued_before
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted


class OAuthStateBroker:
    """
    Issue and validate CSRF state tokens.

    Example:
        >>> broker = OAuthStateBroker(DatabaseStateStore(db), provider="truelayer")
        >>> state = await broker.issue("user-1")
        >>> await broker.validate(state)
        'user-1'
        >>> await broker.validate(state) is None
        True
    """

    def __init__(
        self,
        store: StateStore,
        provider: str,
        ttl: timedelta = DEFAULT_STATE_TTL,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.provider = provider
        self.ttl = ttl
        self._clock = clock

    async def issue(self, user_id: str) -> str:
        """Generate a 256-bit state token bound to user_id."""
        now = self._clock()
        state = secrets.token_hex(32)

        await self.store.put(state, StateEntry(user_id=user_id, provider=self.provider, issued_at=now))

        swept = await self.store.sweep(now - self.ttl)
        if swept:
            logger.debug(f"Swept {swept} expired OAuth state entries")

        return state

    async def validate(self, state: Optional[str]) -> Optional[str]:
        """
        Consume a state token.

        The entry is deleted on first read even when expired or issued for a
        different provider.

        Returns:
            The issuing user id, or None if missing, consumed or expired
        """
        if not state:
            return None

        entry = await self.store.take(state)
        if entry is None:
            logger.warning(f"OAuth state {state[:8]}... not found or already used")
            return None

        age = self._clock() - entry.issued_at
        if age > self.ttl:
            logger.warning(f"OAuth state {state[:8]}... expired ({int(age.total_seconds())}s old)")
            return None

        if entry.provider != self.provider:
            logger.warning(f"OAuth state {state[:8]}... was issued for {entry.provider}, not {self.provider}")
            return None

        return entry.user_id
