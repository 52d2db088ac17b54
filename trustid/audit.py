"""
Append-only audit history per identity.

Events are only ever inserted, inside the same transaction as the mutation
they describe. The append position (``seq``) is the authoritative order;
timestamps are clamped so they never go backwards for one identity even if
the wall clock does.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .database import AuditEventRecord, IdentityRecord, session_scope
from .domain import ActorRef, AuditAction, AuditEvent
from .errors import NotFoundError
from .normalize import normalize_identity_id, utcnow

DEFAULT_PAGE_SIZE = 100


@dataclass(frozen=True)
class PendingEvent:
    """An event a transition wants appended once its mutation is flushed."""

    action: AuditAction
    actor: ActorRef
    detail: str = ""
    previous_value: Any = None
    new_value: Any = None


def append_event(
    session: Session,
    identity_id: str,
    pending: PendingEvent,
    clock: Callable[[], datetime] = utcnow,
) -> AuditEventRecord:
    """Insert ``pending`` for ``identity_id`` within the caller's transaction."""
    last = session.execute(
        select(func.max(AuditEventRecord.timestamp)).where(
            AuditEventRecord.identity_id == identity_id
        )
    ).scalar()
    now = clock()
    if last is not None and now < last:
        now = last

    record = AuditEventRecord(
        identity_id=identity_id,
        timestamp=now,
        action=pending.action.value,
        actor_kind=pending.actor.kind.value,
        actor_id=pending.actor.id,
        detail=pending.detail,
        previous_value=pending.previous_value,
        new_value=pending.new_value,
    )
    session.add(record)
    session.flush()
    return record


class AuditHistory:
    """
    Lazy, finite and restartable view over one identity's events.

    Each iteration reads the log in pages of ``page_size`` and stops at the
    last event that existed when that iteration started, so appends made
    meanwhile never extend a running pass.
    """

    def __init__(self, session_factory, identity_id: str, page_size: int = DEFAULT_PAGE_SIZE):
        self._session_factory = session_factory
        self.identity_id = identity_id
        self.page_size = page_size

    def __iter__(self) -> Iterator[AuditEvent]:
        with session_scope(self._session_factory) as session:
            upper = session.execute(
                select(func.max(AuditEventRecord.seq)).where(
                    AuditEventRecord.identity_id == self.identity_id
                )
            ).scalar()
        if upper is None:
            return

        after = 0
        while True:
            page = self.page(after_seq=after, upper_seq=upper)
            yield from page
            if len(page) < self.page_size:
                return
            after = page[-1].seq

    def page(
        self,
        after_seq: int = 0,
        limit: Optional[int] = None,
        upper_seq: Optional[int] = None,
    ) -> List[AuditEvent]:
        """Return up to ``limit`` events with ``seq > after_seq``, oldest first."""
        stmt = (
            select(AuditEventRecord)
            .where(AuditEventRecord.identity_id == self.identity_id)
            .where(AuditEventRecord.seq > after_seq)
            .order_by(AuditEventRecord.seq)
            .limit(limit or self.page_size)
        )
        if upper_seq is not None:
            stmt = stmt.where(AuditEventRecord.seq <= upper_seq)
        with session_scope(self._session_factory) as session:
            return [r.to_event() for r in session.execute(stmt).scalars()]


class AuditLog:
    """Read side of the audit history. There is no update or delete."""

    def __init__(self, session_factory, page_size: int = DEFAULT_PAGE_SIZE):
        self._session_factory = session_factory
        self.page_size = page_size

    def history(self, identity_id: str) -> AuditHistory:
        """
        History for one identity.

        Raises:
            NotFoundError: If the identity does not exist
        """
        identity_id = normalize_identity_id(identity_id)
        with session_scope(self._session_factory) as session:
            if session.get(IdentityRecord, identity_id) is None:
                raise NotFoundError(identity_id)
        return AuditHistory(self._session_factory, identity_id, self.page_size)
