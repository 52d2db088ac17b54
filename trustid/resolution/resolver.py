"""
Identity Resolution Orchestrator.

Responsibilities:
- Validate and normalize observed evidence.
- Select an existing identity by prioritized fingerprint match.
- Link the caller's actor reference to a matched identity.
- Create a new identity on a miss.
- Return an explainable resolution result.

Non-Responsibilities:
- No scoring.
- No SQL; all storage goes through ``IdentityStore``.

Invariant:
Two concurrent resolves carrying the same evidence end on the same identity.
The losing insert hits a unique evidence index, surfaces as a conflict, and
the retry finds the winner's record.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..domain import ActorRef, Evidence, EvidenceField, Identity
from ..errors import ConflictError, ValidationError
from ..logger import StructuredLogger, get_logger
from ..normalize import normalize_evidence, normalize_token
from ..retry import exponential_backoff
from ..schema import MAX_TOKEN_LENGTH, require_evidence
from ..store import IdentityStore
from ..transitions import apply_creation, apply_link
from .matching import CONFIDENCE_WEIGHTS, Match, select_match

# face embedding reference -> [(identity id, similarity in [0, 1])]
BiometricMatcher = Callable[[str], Iterable[Tuple[str, float]]]


@dataclass(frozen=True)
class Resolution:
    identity: Identity
    is_new: bool
    matched_on: List[EvidenceField] = field(default_factory=list)
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.identity.id,
            "verificationStatus": self.identity.verification_status.value,
            "riskScore": self.identity.risk_score,
            "trustTier": self.identity.trust_tier.value,
            "isNew": self.is_new,
            "matchedOn": [f.value for f in self.matched_on],
            "confidence": self.confidence,
            "linkedActorCount": len(self.identity.linked_actors),
        }


def _require_actor_ref(actor_ref: Optional[str]) -> Optional[str]:
    if actor_ref is None:
        return None
    if not isinstance(actor_ref, str) or len(actor_ref.strip()) > MAX_TOKEN_LENGTH:
        raise ValidationError(
            f"Actor reference must be a string of at most {MAX_TOKEN_LENGTH} characters",
            code="invalid_actor",
        )
    return normalize_token(actor_ref)


class Resolver:
    """Find-or-create for canonical identities."""

    def __init__(
        self,
        store: IdentityStore,
        biometric_matcher: Optional[BiometricMatcher] = None,
        biometric_threshold: float = 0.8,
        logger: Optional[StructuredLogger] = None,
    ):
        self.store = store
        self.biometric_matcher = biometric_matcher
        self.biometric_threshold = biometric_threshold
        self.logger = logger or get_logger()

    def _on_conflict_retry(self, attempt, exception, delay):
        self.logger.record_conflict_retry()
        self.logger.warning("Retrying resolve after conflict", attempt=attempt, error=str(exception))

    @exponential_backoff(max_retries=1, base_delay=0.01, exceptions=(ConflictError,), on_retry="_on_conflict_retry")
    def resolve(
        self,
        evidence: Evidence,
        actor_ref: Optional[str] = None,
        performed_by: Optional[ActorRef] = None,
    ) -> Resolution:
        """
        Resolve evidence to a canonical identity.

        Args:
            evidence: Observed fingerprints; at least one is required
            actor_ref: External actor reference to link
            performed_by: Who is resolving (default: the linked actor, as an agent)

        Returns:
            Resolution with the identity, whether it is new, matched fields
            and confidence

        Raises:
            ValidationError: ``insufficient_evidence`` / ``invalid_evidence``
            ConflictError: If a concurrent writer still wins after one retry
            InfrastructureError: If the store is unavailable
        """
        require_evidence(evidence)
        evidence = normalize_evidence(evidence)
        actor_ref = _require_actor_ref(actor_ref)
        performed_by = performed_by or ActorRef.agent(actor_ref)

        match = self._find_match(evidence)
        if match is not None:
            identity = self.store.mutate(
                match.identity.id,
                lambda record, now: apply_link(
                    record, actor_ref, evidence.device_fingerprint, performed_by, now
                ),
            )
            self.logger.record_resolution(created=False)
            self.logger.info(
                "Existing identity matched",
                identity_id=identity.id,
                matched_on=[f.value for f in match.matched_on],
                confidence=match.confidence,
            )
            return Resolution(identity, False, match.matched_on, match.confidence)

        identity = self.store.create(
            lambda record, now: apply_creation(record, evidence, actor_ref, performed_by, now)
        )
        self.logger.record_resolution(created=True)
        self.logger.info(
            "New identity created",
            identity_id=identity.id,
            fields=[f.value for f in evidence.fingerprints()],
        )
        return Resolution(identity, True)

    def _find_match(self, evidence: Evidence) -> Optional[Match]:
        match = select_match(self.store.find_candidates(evidence), evidence)
        if match is not None or not evidence.face_embedding_id or self.biometric_matcher is None:
            return match
        return self._biometric_match(evidence.face_embedding_id)

    def _biometric_match(self, face_embedding_id: str) -> Optional[Match]:
        """Ask the external matcher for the most similar known identity."""
        proposals = sorted(
            (p for p in self.biometric_matcher(face_embedding_id) if p[1] >= self.biometric_threshold),
            key=lambda p: (-p[1], p[0]),
        )
        for identity_id, similarity in proposals:
            identity = self.store.find(identity_id)
            if identity is not None:
                ceiling = CONFIDENCE_WEIGHTS[EvidenceField.FACE_EMBEDDING_ID]
                return Match(identity, [EvidenceField.FACE_EMBEDDING_ID], min(similarity, ceiling))
        return None

    def identities_for_actor(self, actor_ref: str) -> List[Identity]:
        return self.store.for_actor(actor_ref)
