"""
Error taxonomy for the identity engine.

Every error carries a stable machine-readable ``code`` plus a human message.
Validation and not-found errors are surfaced as-is; conflicts are retried
once by the store callers; infrastructure errors fail closed everywhere
except in the policy gate.
"""

from typing import Any, Dict, Optional


class TrustIdError(Exception):
    """Base class for all engine errors."""

    default_code = "error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [f"[{self.code}] {self.message}"]
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({context_str})")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Return the wire representation of the error."""
        return {
            "error": self.code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(TrustIdError, ValueError):
    """Malformed input: missing evidence, out-of-range score, bad enum value."""

    default_code = "invalid_input"


class NotFoundError(TrustIdError):
    """Unknown identity id."""

    default_code = "not_found"

    def __init__(self, identity_id: str) -> None:
        super().__init__(
            f"Identity not found: {identity_id}",
            context={"identity_id": identity_id},
        )


class ConflictError(TrustIdError):
    """Concurrent creation collision, duplicate key or stale write."""

    default_code = "conflict"


class InfrastructureError(TrustIdError):
    """The backing store is unavailable or failed."""

    default_code = "infrastructure_unavailable"
