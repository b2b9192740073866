"""
Shared pytest fixtures for credential core tests.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from assistant_core.db_base import Base
from assistant_core.utils.encryption import SecretCipher

# Fixed test key: 64 hex chars, NOT a real secret
TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4


def _register_models():
    # Import models so their tables exist on Base.metadata
    from assistant_core.models.oauth_credential import OAuthCredential  # noqa: F401
    from assistant_core.jobs.models import RetryQueueItem  # noqa: F401


@pytest.fixture
def encryption_key(monkeypatch):
    """Set up encryption key for testing."""
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    return TEST_ENCRYPTION_KEY


@pytest.fixture
def cipher(encryption_key):
    return SecretCipher(encryption_key)


@pytest.fixture
def db_session():
    """Create in-memory SQLite database for testing."""
    engine = create_engine("sqlite:///:memory:")
    _register_models()
    Base.metadata.create_all(bind=engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(tmp_path):
    """
    File-backed SQLite shared by several sessions.

    Used where two independent sessions must see each other's commits.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'core.db'}")
    _register_models()
    Base.metadata.create_all(bind=engine)

    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    sessions = []

    def make_session():
        session = factory()
        sessions.append(session)
        return session

    yield make_session

    for session in sessions:
        session.close()
    engine.dispose()
