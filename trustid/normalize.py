import secrets
from datetime import datetime, timezone
from typing import Optional

from .domain import Evidence

ID_PREFIX = "CID"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite round-trips unchanged."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_token(token: Optional[str]) -> Optional[str]:
    if token is None:
        return None
    token = token.strip()
    return token or None


def normalize_evidence(evidence: Evidence) -> Evidence:
    return Evidence(
        document_hash=normalize_token(evidence.document_hash),
        device_fingerprint=normalize_token(evidence.device_fingerprint),
        face_embedding_id=normalize_token(evidence.face_embedding_id),
    )


def normalize_identity_id(identity_id: str) -> str:
    return identity_id.strip().upper()


def mint_identity_id(now: Optional[datetime] = None) -> str:
    # CID-YYYYMMDD-XXXXXX
    now = now or utcnow()
    return f"{ID_PREFIX}-{now.strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"


def mask_fingerprint(token: Optional[str], visible: int = 8) -> Optional[str]:
    if not token:
        return None
    return "***" + token[-visible:]
