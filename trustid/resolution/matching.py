"""
Match Selection for Identity Resolution.

Responsibilities:
- Decide which fields of a candidate identity match the observed evidence.
- Pick one candidate by field priority.
- Compute match confidence.

Non-Responsibilities:
- No database access.
- No similarity computation; fingerprints match by exact equality only.
- No mutation of identities.

Invariant:
Given the same evidence and candidates, the same identity, fields and
confidence are returned.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from ..domain import Evidence, EvidenceField, Identity

# Document hash is the strongest assertion of identity, a shared device the weakest.
FIELD_PRIORITY: Sequence[EvidenceField] = (
    EvidenceField.DOCUMENT_HASH,
    EvidenceField.FACE_EMBEDDING_ID,
    EvidenceField.DEVICE_FINGERPRINT,
)

CONFIDENCE_WEIGHTS: Dict[EvidenceField, float] = {
    EvidenceField.DOCUMENT_HASH: 0.90,
    EvidenceField.FACE_EMBEDDING_ID: 0.85,
    EvidenceField.DEVICE_FINGERPRINT: 0.70,
}


@dataclass(frozen=True)
class Match:
    identity: Identity
    matched_on: List[EvidenceField]
    confidence: float


def matched_fields(candidate: Identity, evidence: Evidence) -> List[EvidenceField]:
    """Fields on which ``candidate`` equals ``evidence``, in priority order."""
    stored = candidate.evidence.fingerprints()
    observed = evidence.fingerprints()
    return [f for f in FIELD_PRIORITY if f in observed and stored.get(f) == observed[f]]


def confidence(fields: Iterable[EvidenceField]) -> float:
    """Strongest single field, never a sum of correlated weak signals."""
    return max((CONFIDENCE_WEIGHTS[f] for f in fields), default=0.0)


def select_match(candidates: Iterable[Identity], evidence: Evidence) -> Optional[Match]:
    """
    Pick the candidate matched on the highest-priority field.

    Candidates are expected oldest first; among identities matched on the
    same top field the oldest wins.
    """
    best: Optional[Match] = None
    best_rank = len(FIELD_PRIORITY)
    for candidate in candidates:
        fields = matched_fields(candidate, evidence)
        if not fields:
            continue
        rank = FIELD_PRIORITY.index(fields[0])
        if rank < best_rank:
            best = Match(candidate, fields, confidence(fields))
            best_rank = rank
    return best
