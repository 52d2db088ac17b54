"""
Identity Store.

Responsibilities:
- Durable keyed storage of canonical identity records.
- Atomic read-modify-write per record, serialized per identity key.
- Transaction-safe creation with a collision-checked identifier.
- Appending the audit event of every mutation in the same transaction.

Non-Responsibilities:
- No matching policy.
- No scoring.
- No decision about which counters a mutation changes.

Invariant:
A mutation and its audit event are committed together or not at all.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import sessionmaker

from .audit import PendingEvent, append_event
from .database import IdentityRecord, LinkedActorRecord, session_scope
from .domain import Evidence, Identity, TrustTier, VerificationStatus
from .errors import ConflictError, NotFoundError
from .normalize import mint_identity_id, normalize_identity_id, utcnow

MAX_ID_ATTEMPTS = 5

Mutation = Callable[[IdentityRecord, datetime], Optional[PendingEvent]]


class KeyedLock:
    """One mutex per key, created on demand and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class IdentityStore:
    """SQLAlchemy-backed identity repository."""

    def __init__(
        self,
        session_factory: sessionmaker,
        id_factory: Callable[[], str] = mint_identity_id,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._id_factory = id_factory
        self._clock = clock
        self._locks = KeyedLock()

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory

    # Writes

    def create(self, populate: Mutation) -> Identity:
        """
        Insert a new identity under a freshly minted id.

        Args:
            populate: Fills the new record and returns its creation event

        Raises:
            ConflictError: If no unused id could be minted, or a unique
                evidence index rejected the insert
        """
        with session_scope(self._session_factory, commit=True) as session:
            identity_id = self._unused_id(session)
            record = IdentityRecord(id=identity_id)
            pending = populate(record, self._clock())
            session.add(record)
            session.flush()
            append_event(session, identity_id, pending, clock=self._clock)
            return record.to_identity()

    def mutate(self, identity_id: str, apply: Mutation) -> Identity:
        """
        Read-modify-write one identity while holding its key.

        ``apply`` returns the event describing its change, or None when it
        changed nothing (then nothing is written).

        Raises:
            NotFoundError: If the identity does not exist
            ConflictError: If another writer updated the row first
        """
        identity_id = normalize_identity_id(identity_id)
        with self._locks.hold(identity_id):
            with session_scope(self._session_factory, commit=True) as session:
                record = session.get(IdentityRecord, identity_id)
                if record is None:
                    raise NotFoundError(identity_id)
                pending = apply(record, self._clock())
                if pending is not None:
                    session.flush()
                    append_event(session, identity_id, pending, clock=self._clock)
                return record.to_identity()

    def _unused_id(self, session) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            candidate = normalize_identity_id(self._id_factory())
            if session.get(IdentityRecord, candidate) is None:
                return candidate
        raise ConflictError(
            f"Could not mint an unused identity id after {MAX_ID_ATTEMPTS} attempts",
            context={"attempts": MAX_ID_ATTEMPTS},
        )

    # Reads

    def find(self, identity_id: str) -> Optional[Identity]:
        identity_id = normalize_identity_id(identity_id)
        with session_scope(self._session_factory) as session:
            record = session.get(IdentityRecord, identity_id)
            return record.to_identity() if record else None

    def get(self, identity_id: str) -> Identity:
        """
        Raises:
            NotFoundError: If the identity does not exist
        """
        identity = self.find(identity_id)
        if identity is None:
            raise NotFoundError(normalize_identity_id(identity_id))
        return identity

    def find_candidates(self, evidence: Evidence) -> List[Identity]:
        """Identities sharing at least one fingerprint with ``evidence``."""
        conditions = []
        if evidence.document_hash:
            conditions.append(IdentityRecord.document_hash == evidence.document_hash)
        if evidence.face_embedding_id:
            conditions.append(IdentityRecord.face_embedding_id == evidence.face_embedding_id)
        if evidence.device_fingerprint:
            conditions.append(IdentityRecord.device_fingerprint == evidence.device_fingerprint)
        if not conditions:
            return []

        stmt = select(IdentityRecord).where(or_(*conditions)).order_by(IdentityRecord.created_at)
        with session_scope(self._session_factory) as session:
            return [r.to_identity() for r in session.execute(stmt).scalars()]

    def search(
        self,
        status: Optional[VerificationStatus] = None,
        trust_tier: Optional[TrustTier] = None,
        min_score: Optional[int] = None,
        max_score: Optional[int] = None,
        identity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Identity]:
        """Filtered identities, newest first."""
        stmt = select(IdentityRecord)
        if status is not None:
            stmt = stmt.where(IdentityRecord.verification_status == VerificationStatus(status).value)
        if trust_tier is not None:
            stmt = stmt.where(IdentityRecord.trust_tier == TrustTier(trust_tier).value)
        if min_score is not None:
            stmt = stmt.where(IdentityRecord.risk_score >= min_score)
        if max_score is not None:
            stmt = stmt.where(IdentityRecord.risk_score <= max_score)
        if identity_id:
            stmt = stmt.where(IdentityRecord.id == normalize_identity_id(identity_id))
        stmt = stmt.order_by(IdentityRecord.created_at.desc(), IdentityRecord.id).limit(limit)

        with session_scope(self._session_factory) as session:
            return [r.to_identity() for r in session.execute(stmt).scalars()]

    def high_risk(self, threshold: int, limit: Optional[int] = None) -> List[Identity]:
        """Identities with ``risk_score >= threshold``, riskiest first."""
        stmt = (
            select(IdentityRecord)
            .where(IdentityRecord.risk_score >= threshold)
            .order_by(IdentityRecord.risk_score.desc(), IdentityRecord.created_at, IdentityRecord.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with session_scope(self._session_factory) as session:
            return [r.to_identity() for r in session.execute(stmt).scalars()]

    def for_actor(self, actor_ref: str) -> List[Identity]:
        stmt = (
            select(IdentityRecord)
            .join(LinkedActorRecord, LinkedActorRecord.identity_id == IdentityRecord.id)
            .where(LinkedActorRecord.actor_ref == actor_ref)
            .order_by(IdentityRecord.created_at)
        )
        with session_scope(self._session_factory) as session:
            return [r.to_identity() for r in session.execute(stmt).scalars()]

    def stats(self, high_risk_threshold: int) -> Dict[str, int]:
        with session_scope(self._session_factory) as session:
            by_status = dict(
                session.execute(
                    select(IdentityRecord.verification_status, func.count()).group_by(
                        IdentityRecord.verification_status
                    )
                ).all()
            )
            high_risk = session.execute(
                select(func.count()).select_from(IdentityRecord).where(
                    IdentityRecord.risk_score >= high_risk_threshold
                )
            ).scalar()
        return {
            "total": sum(by_status.values()),
            "verified": by_status.get(VerificationStatus.VERIFIED.value, 0),
            "pending": by_status.get(VerificationStatus.PENDING.value, 0),
            "flagged": by_status.get(VerificationStatus.FLAGGED.value, 0),
            "highRisk": high_risk or 0,
        }
