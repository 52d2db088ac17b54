"""
Database schema and connection management.

Uses SQLAlchemy (SQLite by default) for identity storage. Unique indexes on
the identity id and on each evidence fingerprint column are what stop two
concurrent resolves from creating two identities for the same evidence;
``version`` is an optimistic-concurrency counter checked on every update.
"""

import threading
import weakref
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from .domain import (
    ActorKind,
    ActorRef,
    AuditAction,
    AuditEvent,
    Counters,
    Evidence,
    Identity,
    ScoreSource,
    TrustTier,
    VerificationStatus,
)
from .errors import ConflictError, InfrastructureError
from .normalize import utcnow

Base = declarative_base()

TOKEN_LENGTH = 256


class IdentityRecord(Base):
    """Canonical identity row."""

    __tablename__ = "identities"

    id = Column(String(32), primary_key=True)  # CID-YYYYMMDD-XXXXXX
    verification_status = Column(String(16), nullable=False, default=VerificationStatus.PENDING.value)
    risk_score = Column(Integer, nullable=False, default=50)
    trust_tier = Column(String(16), nullable=False, default=TrustTier.UNKNOWN.value)
    score_source = Column(String(16), nullable=False, default=ScoreSource.PRIOR.value)

    document_hash = Column(String(TOKEN_LENGTH), unique=True)
    device_fingerprint = Column(String(TOKEN_LENGTH), unique=True)
    face_embedding_id = Column(String(TOKEN_LENGTH), unique=True)

    total_verifications = Column(Integer, nullable=False, default=0)
    flag_count = Column(Integer, nullable=False, default=0)
    last_verification_at = Column(DateTime)
    last_risk_assessment_at = Column(DateTime)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    linked_actors = relationship(
        "LinkedActorRecord", cascade="all, delete-orphan", lazy="selectin"
    )
    devices = relationship(
        "DeviceObservationRecord", cascade="all, delete-orphan", lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_identities_status_risk", "verification_status", "risk_score"),
        Index("ix_identities_trust_tier", "trust_tier"),
        Index("ix_identities_created_at", "created_at"),
    )

    def actor_refs(self) -> set:
        return {a.actor_ref for a in self.linked_actors}

    def device_set(self) -> set:
        return {d.device_fingerprint for d in self.devices}

    def to_identity(self) -> Identity:
        return Identity(
            id=self.id,
            verification_status=VerificationStatus(self.verification_status),
            risk_score=self.risk_score,
            trust_tier=TrustTier(self.trust_tier),
            score_source=ScoreSource(self.score_source),
            evidence=Evidence(
                document_hash=self.document_hash,
                device_fingerprint=self.device_fingerprint,
                face_embedding_id=self.face_embedding_id,
            ),
            linked_actors=frozenset(self.actor_refs()),
            observed_devices=frozenset(self.device_set()),
            counters=Counters(
                total_verifications=self.total_verifications or 0,
                flag_count=self.flag_count or 0,
                last_verification_at=self.last_verification_at,
                last_risk_assessment_at=self.last_risk_assessment_at,
            ),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class LinkedActorRecord(Base):
    """External actor reference linked to an identity."""

    __tablename__ = "linked_actors"

    identity_id = Column(String(32), ForeignKey("identities.id"), primary_key=True)
    actor_ref = Column(String(TOKEN_LENGTH), primary_key=True)
    linked_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_linked_actors_actor_ref", "actor_ref"),)


class DeviceObservationRecord(Base):
    """Distinct device fingerprint seen together with an identity."""

    __tablename__ = "device_observations"

    identity_id = Column(String(32), ForeignKey("identities.id"), primary_key=True)
    device_fingerprint = Column(String(TOKEN_LENGTH), primary_key=True)
    first_seen_at = Column(DateTime, nullable=False, default=utcnow)


class AuditEventRecord(Base):
    """Append-only history row. ``seq`` is the authoritative order."""

    __tablename__ = "audit_events"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    identity_id = Column(String(32), ForeignKey("identities.id"), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False)
    action = Column(String(16), nullable=False)
    actor_kind = Column(String(16), nullable=False)
    actor_id = Column(String(TOKEN_LENGTH))
    detail = Column(Text, nullable=False, default="")
    previous_value = Column(JSON)
    new_value = Column(JSON)

    def to_event(self) -> AuditEvent:
        return AuditEvent(
            seq=self.seq,
            identity_id=self.identity_id,
            timestamp=self.timestamp,
            action=AuditAction(self.action),
            actor=ActorRef(ActorKind(self.actor_kind), self.actor_id),
            detail=self.detail or "",
            previous_value=self.previous_value,
            new_value=self.new_value,
        )


def _sqlite_connect(dbapi_connection, connection_record):
    # Let SQLAlchemy emit BEGIN itself (see _sqlite_begin).
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_begin(conn):
    # Take the write lock up front: a deferred transaction that later upgrades
    # its read lock can deadlock against another writer and fail immediately.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(database_url: str) -> Engine:
    """
    Create an engine, preparing SQLite specifics.

    Args:
        database_url: SQLAlchemy URL, e.g. ``sqlite:///data/trustid.db``

    Returns:
        SQLAlchemy engine
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    if url.database in (None, "", ":memory:"):
        # One shared connection, otherwise every session sees an empty database.
        # Sessions on it are serialized in session_scope.
        kwargs["poolclass"] = StaticPool
    else:
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, **kwargs)
    event.listen(engine, "connect", _sqlite_connect)
    event.listen(engine, "begin", _sqlite_begin)
    return engine


# Engines whose sessions all share one connection -> lock serializing them
_serial_locks = weakref.WeakKeyDictionary()
_serial_locks_guard = threading.Lock()


def _serial_lock(engine: Optional[Engine]):
    if engine is None or not isinstance(engine.pool, StaticPool):
        return nullcontext()
    with _serial_locks_guard:
        return _serial_locks.setdefault(engine, threading.RLock())


def init_database(database_url: str, engine: Optional[Engine] = None) -> Engine:
    """
    Initialize database and create tables.

    Args:
        database_url: SQLAlchemy URL
        engine: Reuse an existing engine instead of creating one

    Returns:
        The engine the tables were created on
    """
    engine = engine or make_engine(database_url)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to ``engine``; objects stay readable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker, commit: bool = False) -> Iterator[Session]:
    """
    Session for one unit of work, translating database failures.

    Either everything done inside the block is committed (``commit=True``)
    or nothing is: any exception, including an interrupt, rolls back.
    On an in-memory engine, where every session shares one connection,
    units of work run one at a time.

    Raises:
        ConflictError: On unique-index violations and stale versioned writes
        InfrastructureError: On any other database failure
    """
    with _serial_lock(session_factory.kw.get("bind")):
        with _unit_of_work(session_factory, commit) as session:
            yield session


@contextmanager
def _unit_of_work(session_factory: sessionmaker, commit: bool) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        if commit:
            session.commit()
    except IntegrityError as e:
        session.rollback()
        raise ConflictError("Write conflicts with an existing record", context={"cause": str(e.orig)}) from e
    except StaleDataError as e:
        session.rollback()
        raise ConflictError("Record was modified concurrently", context={"cause": str(e)}) from e
    except SQLAlchemyError as e:
        session.rollback()
        raise InfrastructureError(f"Identity store failure: {e.__class__.__name__}", context={"cause": str(e)}) from e
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
