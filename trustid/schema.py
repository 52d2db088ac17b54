"""
Input validation for engine operations.

The ``validate_*`` functions return a list of error messages (empty means
valid) so callers can report every problem at once; the ``require_*``
helpers raise ``ValidationError`` with a stable code.
"""

from typing import Any, Dict, List, Optional

from .domain import ActorRef, Evidence, TrustTier, VerificationStatus
from .errors import ValidationError

MAX_TOKEN_LENGTH = 256
MAX_SEARCH_LIMIT = 1000

EVIDENCE_FIELDS = {
    "documentHash": "document_hash",
    "deviceFingerprint": "device_fingerprint",
    "faceEmbeddingId": "face_embedding_id",
}
FILTER_FIELDS = {"status", "trustTier", "minScore", "maxScore", "id", "limit"}


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def validate_evidence(evidence: Evidence) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    Blank strings count as absent.
    """
    errors: List[str] = []
    for wire_name, attr in EVIDENCE_FIELDS.items():
        value = getattr(evidence, attr)
        if value is None:
            continue
        if not isinstance(value, str):
            errors.append(f"Field '{wire_name}' must be a string if provided")
        elif len(value.strip()) > MAX_TOKEN_LENGTH:
            errors.append(f"Field '{wire_name}' must be at most {MAX_TOKEN_LENGTH} characters")
    return errors


def require_evidence(evidence: Evidence) -> None:
    errors = validate_evidence(evidence)
    if errors:
        raise ValidationError("; ".join(errors), code="invalid_evidence")
    if not any(_is_non_empty_str(getattr(evidence, a)) for a in EVIDENCE_FIELDS.values()):
        raise ValidationError(
            "At least one identifier (documentHash, faceEmbeddingId, or deviceFingerprint) is required",
            code="insufficient_evidence",
        )


def require_status(value: Any) -> VerificationStatus:
    try:
        return VerificationStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in VerificationStatus)
        raise ValidationError(
            f"Invalid verification status '{value}'. Expected one of: {allowed}",
            code="invalid_status",
        ) from None


def require_tier(value: Any) -> TrustTier:
    try:
        return TrustTier(value)
    except ValueError:
        allowed = ", ".join(t.value for t in TrustTier)
        raise ValidationError(
            f"Invalid trust tier '{value}'. Expected one of: {allowed}",
            code="invalid_tier",
        ) from None


def require_score(value: Any) -> int:
    if not _is_int(value) or not 0 <= value <= 100:
        raise ValidationError(
            f"Risk score must be an integer between 0 and 100, got {value!r}",
            code="out_of_range",
        )
    return value


def require_actor(actor: Any) -> ActorRef:
    if not isinstance(actor, ActorRef):
        raise ValidationError("Actor must be an ActorRef", code="invalid_actor")
    return actor


def validate_filters(filters: Dict[str, Any]) -> List[str]:
    errors: List[str] = []

    unknown = set(filters) - FILTER_FIELDS
    if unknown:
        errors.append(f"Unknown filter(s): {', '.join(sorted(unknown))}")

    status = filters.get("status")
    if status is not None and status not in {s.value for s in VerificationStatus}:
        errors.append(f"Filter 'status' has invalid value '{status}'")

    tier = filters.get("trustTier")
    if tier is not None and tier not in {t.value for t in TrustTier}:
        errors.append(f"Filter 'trustTier' has invalid value '{tier}'")

    for f in ("minScore", "maxScore"):
        v = filters.get(f)
        if v is not None and (not _is_int(v) or not 0 <= v <= 100):
            errors.append(f"Filter '{f}' must be an integer between 0 and 100")

    lo, hi = filters.get("minScore"), filters.get("maxScore")
    if _is_int(lo) and _is_int(hi) and lo > hi:
        errors.append("Filter 'minScore' must not exceed 'maxScore'")

    if filters.get("id") is not None and not _is_non_empty_str(filters["id"]):
        errors.append("Filter 'id' must be a non-empty string")

    limit = filters.get("limit")
    if limit is not None and (not _is_int(limit) or not 1 <= limit <= MAX_SEARCH_LIMIT):
        errors.append(f"Filter 'limit' must be an integer between 1 and {MAX_SEARCH_LIMIT}")

    return errors


def require_filters(filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    filters = {k: v for k, v in (filters or {}).items() if v is not None}
    errors = validate_filters(filters)
    if errors:
        raise ValidationError("; ".join(errors), code="invalid_filter")
    return filters
