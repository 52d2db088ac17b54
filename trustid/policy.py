"""
Policy Gate.

Responsibilities:
- Decide allow/deny for a gated action from an externally owned
  "requires verification" flag and the identity's verification status.
- Offer snapshot checks on trust tier and risk score.

Non-Responsibilities:
- No ownership of policies; they come from a collaborator lookup.
- No resolution of external actors to groups.

Failure semantics:
``authorize`` and ``authorize_for_group`` FAIL OPEN. Any error while
fetching the identity or the policy yields ``allowed=True`` with a
``fail_open:<code>`` reason and a logged warning. This trades strict
enforcement for availability because the gate only augments the caller's
own primary verification; it must not be the sole control in front of a
sensitive action. The snapshot checks evaluate data already in hand and
fail closed.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .domain import Identity, TrustTier, VerificationStatus, tier_rank
from .errors import TrustIdError
from .logger import StructuredLogger, get_logger
from .retry import CircuitBreaker
from .schema import require_tier
from .store import IdentityStore

# group id -> {"requiresVerification": bool}
PolicyLookup = Callable[[str], Mapping[str, Any]]

DEFAULT_MAX_RISK = 70


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str

    @property
    def failed_open(self) -> bool:
        return self.reason.startswith("fail_open:")

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason}


class PolicyGate:
    """Optional enforcement point consulted downstream of resolution."""

    def __init__(
        self,
        store: IdentityStore,
        policy_lookup: Optional[PolicyLookup] = None,
        breaker: Optional[CircuitBreaker] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.store = store
        self.policy_lookup = policy_lookup
        self.breaker = breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=30)
        self.logger = logger or get_logger()

    def authorize(
        self,
        identity: Union[Identity, str, None],
        policy_requires_verification: bool,
    ) -> Decision:
        """
        Decide whether a gated action may proceed.

        Args:
            identity: Identity snapshot, identity id to fetch, or None
            policy_requires_verification: The collaborator-owned flag

        Returns:
            Decision; never raises for store failures (fails open)
        """
        if not policy_requires_verification:
            return self._decide(True, "policy_not_required")

        try:
            if isinstance(identity, str):
                identity = self.breaker.call(self.store.find, identity)
        except Exception as e:  # fail open on any fetch failure
            return self._fail_open(e)

        return self._evaluate(identity)

    def authorize_for_group(self, identity: Union[Identity, str, None], group_id: str) -> Decision:
        """Look up the group's policy, then ``authorize``. Lookup failures fail open."""
        try:
            if self.policy_lookup is None:
                raise TrustIdError("No policy lookup configured", code="policy_unavailable")
            policy = self.policy_lookup(group_id) or {}
        except Exception as e:  # collaborator code: any failure fails open
            return self._fail_open(e, group_id=group_id)
        return self.authorize(identity, bool(policy.get("requiresVerification", False)))

    # Snapshot checks

    def check_trust_tier(self, identity: Optional[Identity], minimum: Union[TrustTier, str]) -> Decision:
        """Allow when the identity's tier is at least ``minimum``."""
        minimum = require_tier(minimum)
        if identity is None:
            return self._decide(False, "no_identity")
        if tier_rank(identity.trust_tier) < tier_rank(minimum):
            return self._decide(False, f"trust_too_low:{identity.trust_tier.value}")
        return self._decide(True, "trust_ok")

    def check_risk(self, identity: Optional[Identity], max_score: int = DEFAULT_MAX_RISK) -> Decision:
        """Allow when the identity's risk score does not exceed ``max_score``."""
        if identity is None:
            return self._decide(False, "no_identity")
        if identity.risk_score > max_score:
            return self._decide(False, f"risk_too_high:{identity.risk_score}")
        return self._decide(True, "risk_ok")

    def _evaluate(self, identity: Optional[Identity]) -> Decision:
        if identity is None:
            return self._decide(False, "no_identity")
        if identity.verification_status != VerificationStatus.VERIFIED:
            self.logger.warning(
                "Verification required but identity not verified",
                identity_id=identity.id,
                status=identity.verification_status.value,
            )
            return self._decide(False, f"not_verified:{identity.verification_status.value}")
        return self._decide(True, "verified")

    def _decide(self, allowed: bool, reason: str) -> Decision:
        self.logger.record_gate_decision(allowed)
        return Decision(allowed, reason)

    def _fail_open(self, error: Exception, **context) -> Decision:
        code = getattr(error, "code", error.__class__.__name__)
        self.logger.record_error(error.__class__.__name__)
        self.logger.record_gate_decision(True, fail_open=True)
        self.logger.warning(
            "Policy gate enforcement skipped due to error - allowing request",
            error=str(error),
            code=code,
            **context,
        )
        return Decision(True, f"fail_open:{code}")
