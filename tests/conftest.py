import os

# Settings are read once at import time, so the environment has to be in
# place before any backend module is imported.
TEST_ENCRYPTION_KEY = "0f" * 32

os.environ.update({
    "DATABASE_URL": "sqlite://",
    "SECRET_KEY": "test-secret-key",
    "TRUELAYER_ENV": "sandbox",
    "TRUELAYER_CLIENT_ID": "test-client",
    "TRUELAYER_CLIENT_SECRET": "test-client-secret",
    "TRUELAYER_REDIRECT_URI": "http://localhost:8000/api/banks/truelayer/callback",
    "TOKEN_ENCRYPTION_KEY": TEST_ENCRYPTION_KEY,
    "FRONTEND_URL": "http://frontend.test",
    "AUTO_SYNC_INTERVAL_MINUTES": "0",
})

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app import models  # noqa: F401  registers tables
from backend.app.bank_integration.encryption import CredentialVault
from backend.app.bank_integration.token_lifecycle import RefreshLocks, TokenLifecycleManager
from backend.config import Settings
from backend.database import Base
from tests.fakes import FakeProvider, MutableClock


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def vault():
    return CredentialVault.from_hex(TEST_ENCRYPTION_KEY)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def lifecycle(db, provider, vault, clock):
    return TokenLifecycleManager(db, provider, vault, clock=clock, locks=RefreshLocks())
