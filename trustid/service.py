"""
Identity engine facade.

Wires the store, resolver, risk engine, audit log and policy gate from one
``Settings`` object and exposes every operation with camelCase wire dicts,
the shape the CLI prints and an HTTP layer would return.
"""

from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy.engine import Engine

from .audit import AuditLog
from .config import Settings
from .database import get_session_factory, init_database
from .domain import ActorRef, Evidence, Identity
from .errors import ConflictError
from .logger import StructuredLogger, get_logger
from .normalize import mask_fingerprint, mint_identity_id, normalize_token, utcnow
from .policy import PolicyGate, PolicyLookup
from .resolution import BiometricMatcher, Resolver
from .retry import exponential_backoff
from .risk import RiskSignals, StoredRiskEngine
from .schema import MAX_SEARCH_LIMIT, require_actor, require_filters, require_score, require_status
from .store import IdentityStore
from .transitions import apply_status

EvidenceInput = Union[Evidence, Mapping[str, Any]]
SignalsInput = Union[RiskSignals, Mapping[str, Any], None]


def _as_evidence(evidence: EvidenceInput) -> Evidence:
    if isinstance(evidence, Evidence):
        return evidence
    return Evidence.from_dict(evidence or {})


def _as_signals(signals: SignalsInput) -> Optional[RiskSignals]:
    if signals is None or isinstance(signals, RiskSignals):
        return signals
    return RiskSignals.from_dict(signals)


def _masked_evidence(identity: Identity) -> Dict[str, Optional[str]]:
    return {
        field.value: mask_fingerprint(value)
        for field, value in identity.evidence.fingerprints().items()
    }


class IdentityEngine:
    """Every engine operation behind one object."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        policy_lookup: Optional[PolicyLookup] = None,
        biometric_matcher: Optional[BiometricMatcher] = None,
        id_factory=mint_identity_id,
        clock=utcnow,
        logger: Optional[StructuredLogger] = None,
    ):
        self.settings = settings or Settings()
        self.logger = logger or get_logger(
            level=self.settings.log_level, log_dir=self.settings.log_dir
        )
        self._owns_engine = engine is None
        self.engine = init_database(self.settings.database_url, engine=engine)
        self.session_factory = get_session_factory(self.engine)

        self.store = IdentityStore(self.session_factory, id_factory=id_factory, clock=clock)
        self.audit = AuditLog(self.session_factory)
        self.resolver = Resolver(self.store, biometric_matcher, logger=self.logger)
        self.risk = StoredRiskEngine(self.store, self.settings.risk, logger=self.logger)
        self.gate = PolicyGate(self.store, policy_lookup, logger=self.logger)

    def close(self):
        if self._owns_engine:
            self.engine.dispose()

    def _on_conflict_retry(self, attempt, exception, delay):
        self.logger.record_conflict_retry()
        self.logger.warning("Retrying status update after conflict", attempt=attempt, error=str(exception))

    # Resolution

    def resolve(
        self,
        evidence: EvidenceInput,
        actor_ref: Optional[str] = None,
        performed_by: Optional[ActorRef] = None,
        assess: bool = False,
    ) -> Dict[str, Any]:
        """
        Resolve evidence to a canonical identity.

        With ``assess=True`` the identity is scored right after resolution,
        so two audit events are appended.
        """
        resolution = self.resolver.resolve(_as_evidence(evidence), actor_ref, performed_by)
        if assess:
            actor = performed_by or ActorRef.agent(normalize_token(actor_ref))
            assessed = self.risk.score_and_persist(resolution.identity.id, None, actor)
            resolution = replace(resolution, identity=assessed)
        return resolution.to_dict()

    def identities_for_actor(self, actor_ref: str) -> List[Dict[str, Any]]:
        return [i.to_dict() for i in self.resolver.identities_for_actor(normalize_token(actor_ref))]

    # Reads

    def get_status(self, identity_id: str) -> Dict[str, Any]:
        identity = self.store.get(identity_id)
        return {**identity.to_dict(), "evidence": _masked_evidence(identity)}

    def get_risk_breakdown(self, identity_id: str) -> Dict[str, Any]:
        return self.risk.review(identity_id).to_dict()

    def get_history(self, identity_id: str) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in self.audit.history(identity_id)]

    def list_high_risk(self, threshold: Optional[int] = None) -> List[Dict[str, Any]]:
        if threshold is None:
            threshold = self.settings.high_risk_threshold
        threshold = require_score(threshold)
        return [i.to_dict() for i in self.store.high_risk(threshold)]

    def search(self, filters: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Filtered identities, newest first.

        Raises:
            ValidationError: ``invalid_filter`` on unknown keys or bad values
        """
        filters = require_filters(dict(filters or {}))
        limit = min(filters.get("limit", self.settings.search_limit), MAX_SEARCH_LIMIT)
        identities = self.store.search(
            status=filters.get("status"),
            trust_tier=filters.get("trustTier"),
            min_score=filters.get("minScore"),
            max_score=filters.get("maxScore"),
            identity_id=filters.get("id"),
            limit=limit,
        )
        return [i.to_dict() for i in identities]

    def stats(self) -> Dict[str, int]:
        return self.store.stats(self.settings.high_risk_threshold)

    # Mutations

    @exponential_backoff(max_retries=1, base_delay=0.01, exceptions=(ConflictError,), on_retry="_on_conflict_retry")
    def update_status(self, identity_id: str, new_status: str, actor: ActorRef) -> Dict[str, Any]:
        """
        Raises:
            ValidationError: ``invalid_status`` for an unknown status
            NotFoundError: If the identity does not exist
        """
        status = require_status(new_status)
        actor = require_actor(actor)
        identity = self.store.mutate(
            identity_id, lambda record, now: apply_status(record, status, actor, now)
        )
        self.logger.info(
            "Verification status updated",
            identity_id=identity.id,
            status=status.value,
            actor=actor.to_dict(),
        )
        return identity.to_dict()

    def update_risk_override(self, identity_id: str, risk_score: int, actor: ActorRef) -> Dict[str, Any]:
        return self.risk.override(identity_id, risk_score, actor).to_dict()

    def assess_risk(
        self,
        identity_id: str,
        signals: SignalsInput = None,
        actor: Optional[ActorRef] = None,
    ) -> Dict[str, Any]:
        actor = actor or ActorRef.agent(None)
        return self.risk.score_and_persist(identity_id, _as_signals(signals), actor).to_dict()

    # Policy gate

    def authorize(self, identity_id: Optional[str], requires_verification: bool) -> Dict[str, Any]:
        return self.gate.authorize(identity_id, requires_verification).to_dict()

    def authorize_for_group(self, identity_id: Optional[str], group_id: str) -> Dict[str, Any]:
        return self.gate.authorize_for_group(identity_id, group_id).to_dict()

    def metrics(self) -> Dict[str, Any]:
        return self.logger.get_metrics()
