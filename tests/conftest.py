"""
Pytest configuration and shared fixtures.
"""

import pytest
from datetime import datetime, timedelta

from trustid.audit import AuditLog
from trustid.config import Settings
from trustid.database import get_session_factory, init_database
from trustid.domain import ActorRef, Evidence, Identity, ScoreSource, TrustTier, VerificationStatus
from trustid.logger import get_logger, reset_logger
from trustid.policy import PolicyGate
from trustid.resolution import Resolver
from trustid.risk import StoredRiskEngine
from trustid.service import IdentityEngine
from trustid.store import IdentityStore


class TickingClock:
    """Deterministic clock advancing by ``step`` on every call."""

    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0), step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        self.now = self.now + self.step
        return self.now


@pytest.fixture(autouse=True)
def quiet_logger():
    """Fresh global logger per test, no console or file output."""
    reset_logger()
    logger = get_logger(enable_console=False, enable_file=False)
    yield logger
    reset_logger()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'trustid.db'}"


@pytest.fixture
def db_engine(database_url):
    engine = init_database(database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def store(session_factory) -> IdentityStore:
    return IdentityStore(session_factory)


@pytest.fixture
def resolver(store) -> Resolver:
    return Resolver(store)


@pytest.fixture
def risk_engine(store) -> StoredRiskEngine:
    return StoredRiskEngine(store)


@pytest.fixture
def audit_log(session_factory) -> AuditLog:
    return AuditLog(session_factory)


@pytest.fixture
def gate(store) -> PolicyGate:
    return PolicyGate(store)


@pytest.fixture
def operator() -> ActorRef:
    return ActorRef.operator("op-1")


@pytest.fixture
def engine(database_url, clock):
    """Service facade on a temporary SQLite file with a ticking clock."""
    service = IdentityEngine(Settings(database_url=database_url), clock=clock)
    yield service
    service.close()


@pytest.fixture
def make_identity():
    """Factory for identity snapshots that never touch a database."""

    def _make(
        status=VerificationStatus.PENDING,
        risk_score=50,
        trust_tier=TrustTier.UNKNOWN,
        identity_id="CID-20260101-ABCDEF",
    ) -> Identity:
        return Identity(
            id=identity_id,
            verification_status=VerificationStatus(status),
            risk_score=risk_score,
            trust_tier=TrustTier(trust_tier),
            score_source=ScoreSource.PRIOR,
            evidence=Evidence(document_hash="abc123"),
        )

    return _make
