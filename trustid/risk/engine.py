"""
Risk engine bound to the identity store.

Wraps the pure scoring in ``scoring.py`` with the read-modify-write needed to
persist a score. Infrastructure failures are surfaced: a risk score is never
fabricated when the store cannot be read or written.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from ..database import IdentityRecord
from ..domain import ActorRef, Identity, ScoreSource, TrustTier, VerificationStatus
from ..errors import ConflictError
from ..logger import StructuredLogger, get_logger
from ..retry import exponential_backoff
from ..schema import require_actor, require_score
from ..store import IdentityStore
from ..transitions import apply_risk
from .scoring import (
    RiskAssessment,
    RiskConfig,
    RiskEngine,
    RiskSignals,
    confidence_for_status,
    describe_tier,
)


@dataclass(frozen=True)
class RiskReview:
    """Stored score next to a fresh calculation, without persisting it."""

    identity: Identity
    assessment: RiskAssessment

    @property
    def needs_update(self) -> bool:
        return (
            self.identity.score_source != ScoreSource.OVERRIDE
            and self.identity.risk_score != self.assessment.risk_score
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.identity.id,
            "riskScore": self.identity.risk_score,
            "trustTier": self.identity.trust_tier.value,
            "scoreSource": self.identity.score_source.value,
            "calculatedRiskScore": self.assessment.risk_score,
            "calculatedTrustTier": self.assessment.trust_tier.value,
            "needsUpdate": self.needs_update,
            "breakdown": self.assessment.to_dict()["breakdown"],
            "inputs": self.assessment.signals.to_dict(),
            "description": describe_tier(self.identity.trust_tier),
        }


def fill_signals(
    signals: Optional[RiskSignals],
    status: VerificationStatus,
    linked_actor_count: int,
    device_count: int,
    flag_count: int,
) -> RiskSignals:
    """Complete missing signals from stored identity state."""
    signals = signals or RiskSignals()
    return replace(
        signals,
        verification_confidence=(
            signals.verification_confidence
            if signals.verification_confidence is not None
            else confidence_for_status(status)
        ),
        identity_reuse_count=(
            signals.identity_reuse_count
            if signals.identity_reuse_count is not None
            else linked_actor_count
        ),
        device_reuse_count=(
            signals.device_reuse_count
            if signals.device_reuse_count is not None
            else device_count
        ),
        incident_count=(
            signals.incident_count if signals.incident_count is not None else flag_count
        ),
    )


def signals_for_identity(identity: Identity, signals: Optional[RiskSignals] = None) -> RiskSignals:
    return fill_signals(
        signals,
        identity.verification_status,
        len(identity.linked_actors),
        len(identity.observed_devices),
        identity.counters.flag_count,
    )


def signals_for_record(record: IdentityRecord, signals: Optional[RiskSignals] = None) -> RiskSignals:
    return fill_signals(
        signals,
        VerificationStatus(record.verification_status),
        len(record.linked_actors),
        len(record.devices),
        record.flag_count or 0,
    )


class StoredRiskEngine(RiskEngine):
    """``RiskEngine`` plus persistence through an ``IdentityStore``."""

    def __init__(
        self,
        store: IdentityStore,
        config: Optional[RiskConfig] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        super().__init__(config)
        self.store = store
        self.logger = logger or get_logger()

    def _on_conflict_retry(self, attempt, exception, delay):
        self.logger.record_conflict_retry()
        self.logger.warning("Retrying risk update after conflict", attempt=attempt, error=str(exception))

    def review(self, identity_id: str, signals: Optional[RiskSignals] = None) -> RiskReview:
        """Calculate a score from current state without writing anything."""
        identity = self.store.get(identity_id)
        return RiskReview(identity, self.score(signals_for_identity(identity, signals)))

    @exponential_backoff(max_retries=1, base_delay=0.01, exceptions=(ConflictError,), on_retry="_on_conflict_retry")
    def score_and_persist(
        self,
        identity_id: str,
        signals: Optional[RiskSignals],
        actor: ActorRef,
    ) -> Identity:
        """
        Score an identity and persist score and tier with a ``risk_assessed`` event.

        Signals left as ``None`` are derived from the stored identity while
        its key is held, so the score matches the state it was computed from.

        Raises:
            NotFoundError: If the identity does not exist
            ValidationError: On invalid signals
            InfrastructureError: If the store is unavailable
        """
        require_actor(actor)
        if signals is not None:
            # Validate caller input before touching the store.
            self.score(fill_signals(signals, VerificationStatus.PENDING, 0, 0, 0))

        def _apply(record: IdentityRecord, now):
            assessment = self.score(signals_for_record(record, signals))
            return apply_risk(
                record, assessment.risk_score, assessment.trust_tier, ScoreSource.COMPUTED, actor, now
            )

        identity = self.store.mutate(identity_id, _apply)
        self.logger.record_risk_assessment()
        self.logger.info(
            "Risk assessed",
            identity_id=identity.id,
            risk_score=identity.risk_score,
            trust_tier=identity.trust_tier.value,
        )
        return identity

    @exponential_backoff(max_retries=1, base_delay=0.01, exceptions=(ConflictError,), on_retry="_on_conflict_retry")
    def override(self, identity_id: str, risk_score: int, actor: ActorRef) -> Identity:
        """
        Manually set a score. The tier still follows the fixed mapping.

        Raises:
            ValidationError: ``out_of_range`` for a score outside [0, 100]
            NotFoundError: If the identity does not exist
        """
        require_actor(actor)
        risk_score = require_score(risk_score)
        tier: TrustTier = self.tier_for(risk_score)

        identity = self.store.mutate(
            identity_id,
            lambda record, now: apply_risk(record, risk_score, tier, ScoreSource.OVERRIDE, actor, now),
        )
        self.logger.warning(
            "Risk score overridden",
            identity_id=identity.id,
            risk_score=risk_score,
            actor=actor.to_dict(),
        )
        return identity
