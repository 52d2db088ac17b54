"""
Risk Scoring Logic (v1).

Responsibilities:
- Compute per-signal risk sub-scores with graduated step functions.
- Combine them into a 0-100 composite with configurable weights.
- Map a composite score to a trust tier.
- Emit a score breakdown.

Non-Responsibilities:
- No database access.
- No audit events.

Invariant:
Given identical signals and configuration, this module must always return
the same score, tier and breakdown.
"""

from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Tuple

from ..domain import TrustTier, VerificationStatus
from ..errors import ValidationError

VERIFIED_CONFIDENCE = 0.9
DEFAULT_CONFIDENCE = 0.5
UNKNOWN_VERIFICATION_RISK = 50


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class RiskWeights:
    """Relative weight of each sub-score in the composite."""

    verification: int = 40
    identity_reuse: int = 25
    device_reuse: int = 20
    incidents: int = 15

    def __post_init__(self):
        values = asdict(self).values()
        if any(v < 0 for v in values) or sum(values) <= 0:
            raise ValidationError(
                "Risk weights must be non-negative with a positive total",
                code="invalid_config",
                context=asdict(self),
            )

    @property
    def total(self) -> int:
        return sum(asdict(self).values())


# (upper bound inclusive, sub-score), checked in order; above the last bound
# the ceiling applies. Zero or missing input always scores 0.
Steps = Tuple[Tuple[int, int], ...]


@dataclass(frozen=True)
class RiskThresholds:
    identity_reuse: Steps = ((2, 10), (5, 40), (10, 70))
    identity_reuse_ceiling: int = 95
    device_reuse: Steps = ((3, 5), (7, 35), (15, 65))
    device_reuse_ceiling: int = 90
    incidents_linear_max: int = 2
    incidents_per_event: int = 20
    incidents_escalation_max: int = 5
    incidents_escalation_step: int = 15
    incidents_ceiling: int = 95


@dataclass(frozen=True)
class TierBand:
    tier: TrustTier
    low: int
    high: int


# Closed, non-overlapping, covering 0..100. Low risk means high trust.
DEFAULT_TIER_BANDS: Tuple[TierBand, ...] = (
    TierBand(TrustTier.VERIFIED, 0, 30),
    TierBand(TrustTier.HIGH, 31, 50),
    TierBand(TrustTier.MEDIUM, 51, 70),
    TierBand(TrustTier.LOW, 71, 100),
)


@dataclass(frozen=True)
class RiskConfig:
    weights: RiskWeights = field(default_factory=RiskWeights)
    thresholds: RiskThresholds = field(default_factory=RiskThresholds)
    tier_bands: Tuple[TierBand, ...] = DEFAULT_TIER_BANDS


@dataclass(frozen=True)
class RiskSignals:
    """Raw inputs. ``None`` means unknown; the persisting wrapper fills it in."""

    verification_confidence: Optional[float] = None
    identity_reuse_count: Optional[int] = None
    device_reuse_count: Optional[int] = None
    incident_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RiskSignals":
        return cls(
            verification_confidence=data.get("verificationConfidence"),
            identity_reuse_count=data.get("identityReuseCount"),
            device_reuse_count=data.get("deviceReuseCount"),
            incident_count=data.get("incidentCount"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verificationConfidence": self.verification_confidence,
            "identityReuseCount": self.identity_reuse_count,
            "deviceReuseCount": self.device_reuse_count,
            "incidentCount": self.incident_count,
        }


@dataclass(frozen=True)
class ComponentScore:
    score: int
    weight: int
    contribution: int

    def to_dict(self) -> Dict[str, int]:
        return {"score": self.score, "weight": self.weight, "contribution": self.contribution}


@dataclass(frozen=True)
class RiskAssessment:
    risk_score: int
    trust_tier: TrustTier
    breakdown: Dict[str, ComponentScore]
    signals: RiskSignals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "riskScore": self.risk_score,
            "trustTier": self.trust_tier.value,
            "breakdown": {k: v.to_dict() for k, v in self.breakdown.items()},
            "inputs": self.signals.to_dict(),
        }


RISK_DESCRIPTIONS = {
    TrustTier.VERIFIED: ("VERY LOW RISK", "Identity is verified and highly trusted", "Approve access"),
    TrustTier.HIGH: ("LOW RISK", "Identity shows good trust indicators", "Approve with standard checks"),
    TrustTier.MEDIUM: ("MODERATE RISK", "Identity requires additional verification", "Manual review recommended"),
    TrustTier.LOW: ("HIGH RISK", "Identity shows suspicious patterns", "Deny or escalate to an operator"),
    TrustTier.UNKNOWN: ("UNKNOWN", "Insufficient data for risk assessment", "Collect more information"),
}


def describe_tier(tier: TrustTier) -> Dict[str, str]:
    level, description, recommendation = RISK_DESCRIPTIONS[TrustTier(tier)]
    return {"level": level, "description": description, "recommendation": recommendation}


def confidence_for_status(status: VerificationStatus) -> float:
    if VerificationStatus(status) == VerificationStatus.VERIFIED:
        return VERIFIED_CONFIDENCE
    return DEFAULT_CONFIDENCE


def _step(count: Optional[int], steps: Steps, ceiling: int) -> int:
    if not count or count <= 0:
        return 0
    for upper, score in steps:
        if count <= upper:
            return score
    return ceiling


def _require_count(name: str, value: Optional[int]) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            f"Signal '{name}' must be a non-negative integer, got {value!r}",
            code="invalid_signal",
        )


class RiskEngine:
    """Weighted risk scoring with an injectable configuration."""

    def __init__(self, config: Optional[RiskConfig] = None):
        self.config = config or RiskConfig()

    # Sub-scores

    def verification_risk(self, confidence: Optional[float]) -> int:
        """Inverse of confidence; confidence above 1 is read as a percentage."""
        if confidence is None:
            return UNKNOWN_VERIFICATION_RISK
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) \
                or not 0 <= confidence <= 100:
            raise ValidationError(
                f"Signal 'verificationConfidence' must be within [0, 1] (or a percentage), got {confidence!r}",
                code="invalid_signal",
            )
        if confidence > 1:
            confidence = confidence / 100
        return round_half_up((1 - confidence) * 100)

    def identity_reuse_risk(self, count: Optional[int]) -> int:
        t = self.config.thresholds
        return _step(count, t.identity_reuse, t.identity_reuse_ceiling)

    def device_reuse_risk(self, count: Optional[int]) -> int:
        t = self.config.thresholds
        return _step(count, t.device_reuse, t.device_reuse_ceiling)

    def incident_risk(self, count: Optional[int]) -> int:
        t = self.config.thresholds
        if not count or count <= 0:
            return 0
        if count <= t.incidents_linear_max:
            return count * t.incidents_per_event
        if count <= t.incidents_escalation_max:
            base = t.incidents_linear_max * t.incidents_per_event
            return base + (count - t.incidents_linear_max) * t.incidents_escalation_step
        return t.incidents_ceiling

    # Composite

    def score(self, signals: RiskSignals) -> RiskAssessment:
        """
        Compute the composite risk score and trust tier. Pure.

        Raises:
            ValidationError: On negative or non-integer counts, or a
                confidence outside the accepted range
        """
        _require_count("identityReuseCount", signals.identity_reuse_count)
        _require_count("deviceReuseCount", signals.device_reuse_count)
        _require_count("incidentCount", signals.incident_count)

        w = self.config.weights
        components = {
            "verificationRisk": (self.verification_risk(signals.verification_confidence), w.verification),
            "identityReuseRisk": (self.identity_reuse_risk(signals.identity_reuse_count), w.identity_reuse),
            "deviceReuseRisk": (self.device_reuse_risk(signals.device_reuse_count), w.device_reuse),
            "incidentRisk": (self.incident_risk(signals.incident_count), w.incidents),
        }

        weighted = sum(score * weight for score, weight in components.values()) / w.total
        risk_score = min(100, max(0, round_half_up(weighted)))

        breakdown = {
            name: ComponentScore(score, weight, round_half_up(score * weight / w.total))
            for name, (score, weight) in components.items()
        }
        return RiskAssessment(risk_score, self.tier_for(risk_score), breakdown, signals)

    def tier_for(self, risk_score: int) -> TrustTier:
        """
        Trust tier for a composite score.

        Raises:
            ValidationError: If the score is outside [0, 100]
        """
        if isinstance(risk_score, bool) or not isinstance(risk_score, int) or not 0 <= risk_score <= 100:
            raise ValidationError(
                f"Risk score must be an integer within [0, 100], got {risk_score!r}",
                code="out_of_range",
            )
        for band in self.config.tier_bands:
            if band.low <= risk_score <= band.high:
                return band.tier
        raise ValidationError(
            f"No trust tier band covers score {risk_score}",
            code="invalid_config",
        )
