"""
Domain types shared by the store, resolver, risk engine and policy gate.

Snapshots returned by the engine are frozen dataclasses; the ORM records in
``database.py`` never leave a store transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    FLAGGED = "flagged"
    SUSPENDED = "suspended"
    UNDER_REVIEW = "under_review"


class TrustTier(str, Enum):
    UNKNOWN = "unknown"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERIFIED = "verified"


# Least to most trusted.
TRUST_TIER_ORDER = (
    TrustTier.UNKNOWN,
    TrustTier.LOW,
    TrustTier.MEDIUM,
    TrustTier.HIGH,
    TrustTier.VERIFIED,
)


class ScoreSource(str, Enum):
    PRIOR = "prior"
    COMPUTED = "computed"
    OVERRIDE = "override"


class AuditAction(str, Enum):
    CREATED = "created"
    VERIFIED = "verified"
    UPDATED = "updated"
    FLAGGED = "flagged"
    CLEARED = "cleared"
    RISK_ASSESSED = "risk_assessed"


class ActorKind(str, Enum):
    ACTOR = "actor"
    AGENT = "agent"
    OPERATOR = "operator"


class EvidenceField(str, Enum):
    """Evidence fingerprint fields, declared in match priority order."""

    DOCUMENT_HASH = "documentHash"
    FACE_EMBEDDING_ID = "faceEmbeddingId"
    DEVICE_FINGERPRINT = "deviceFingerprint"


@dataclass(frozen=True)
class ActorRef:
    """Who performed an action: a tagged reference instead of a loose string."""

    kind: ActorKind
    id: Optional[str] = None

    @classmethod
    def operator(cls, operator_id: str) -> "ActorRef":
        return cls(ActorKind.OPERATOR, operator_id)

    @classmethod
    def agent(cls, agent_id: Optional[str]) -> "ActorRef":
        return cls(ActorKind.AGENT, agent_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "id": self.id}


@dataclass(frozen=True)
class Evidence:
    """Observed fingerprints for one actor. Every field is optional."""

    document_hash: Optional[str] = None
    device_fingerprint: Optional[str] = None
    face_embedding_id: Optional[str] = None

    def fingerprints(self) -> Dict[EvidenceField, str]:
        """Return the present fingerprints keyed by field, in priority order."""
        values = {
            EvidenceField.DOCUMENT_HASH: self.document_hash,
            EvidenceField.FACE_EMBEDDING_ID: self.face_embedding_id,
            EvidenceField.DEVICE_FINGERPRINT: self.device_fingerprint,
        }
        return {k: v for k, v in values.items() if v}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evidence":
        return cls(
            document_hash=data.get("documentHash"),
            device_fingerprint=data.get("deviceFingerprint"),
            face_embedding_id=data.get("faceEmbeddingId"),
        )


@dataclass(frozen=True)
class Counters:
    total_verifications: int = 0
    flag_count: int = 0
    last_verification_at: Optional[datetime] = None
    last_risk_assessment_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalVerifications": self.total_verifications,
            "flagCount": self.flag_count,
            "lastVerificationAt": _iso(self.last_verification_at),
            "lastRiskAssessmentAt": _iso(self.last_risk_assessment_at),
        }


@dataclass(frozen=True)
class Identity:
    """Read-only snapshot of a canonical identity."""

    id: str
    verification_status: VerificationStatus
    risk_score: int
    trust_tier: TrustTier
    score_source: ScoreSource
    evidence: Evidence
    linked_actors: FrozenSet[str] = frozenset()
    observed_devices: FrozenSet[str] = frozenset()
    counters: Counters = field(default_factory=Counters)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "verificationStatus": self.verification_status.value,
            "riskScore": self.risk_score,
            "trustTier": self.trust_tier.value,
            "scoreSource": self.score_source.value,
            "linkedActorCount": len(self.linked_actors),
            "observedDeviceCount": len(self.observed_devices),
            "counters": self.counters.to_dict(),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class AuditEvent:
    """One appended history entry. ``seq`` is the authoritative order."""

    seq: int
    identity_id: str
    timestamp: datetime
    action: AuditAction
    actor: ActorRef
    detail: str = ""
    previous_value: Any = None
    new_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "timestamp": _iso(self.timestamp),
            "action": self.action.value,
            "actor": self.actor.to_dict(),
            "detail": self.detail,
            "previousValue": self.previous_value,
            "newValue": self.new_value,
        }


def tier_rank(tier: TrustTier) -> int:
    """Position of a tier from least (0) to most trusted."""
    return TRUST_TIER_ORDER.index(TrustTier(tier))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


