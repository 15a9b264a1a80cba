"""
Shared test fixtures for all test modules.

Provides:
- Test environment setup (TESTING=true, no Redis)
- engine / session_factory: fresh file-backed SQLite database per test
- store, profiles, contexts, network: components bound to that database
- clock: controllable naive-UTC clock for window arithmetic
"""

import os
from datetime import datetime, timedelta

import pytest

# =============================================================================
# Test Environment Configuration
# =============================================================================

os.environ['TESTING'] = 'true'
os.environ.pop('REDIS_URL', None)

from contextbank.audit import DatabaseAuditSink  # noqa: E402
from contextbank.bounded_context import BoundedContextManager  # noqa: E402
from contextbank.context_network import ContextNetworkAggregator  # noqa: E402
from contextbank.context_store import ContextStore  # noqa: E402
from contextbank.database import create_db_engine, create_session_factory, init_db  # noqa: E402
from contextbank.knowledge_store import KnowledgeDocumentStore  # noqa: E402
from contextbank.profile_manager import ProfileLifecycleManager  # noqa: E402


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    """
    Create a fresh SQLite database with all tables.

    File-backed (not :memory:) so worker threads share the same database.
    """
    engine = create_db_engine(f"sqlite:///{tmp_path / 'contextbank_test.db'}", timeout_seconds=5)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0))


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def store(session_factory):
    return ContextStore(session_factory)


@pytest.fixture
def audit(session_factory):
    return DatabaseAuditSink(session_factory)


@pytest.fixture
def profiles(session_factory, store, audit):
    return ProfileLifecycleManager(session_factory, store=store, audit=audit)


@pytest.fixture
def knowledge_store(session_factory):
    return KnowledgeDocumentStore(session_factory)


@pytest.fixture
def contexts(session_factory, knowledge_store, audit, clock):
    return BoundedContextManager(
        session_factory,
        knowledge_store=knowledge_store,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def network(session_factory, clock):
    return ContextNetworkAggregator(session_factory, clock=clock)


@pytest.fixture
def user_id():
    """Authenticated user id used across profile tests."""
    return 42
