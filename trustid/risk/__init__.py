from .scoring import (
    RiskAssessment,
    RiskConfig,
    RiskEngine,
    RiskSignals,
    RiskThresholds,
    RiskWeights,
    TierBand,
    describe_tier,
)
from .engine import RiskReview, StoredRiskEngine

__all__ = [
    "RiskAssessment",
    "RiskConfig",
    "RiskEngine",
    "RiskReview",
    "RiskSignals",
    "RiskThresholds",
    "RiskWeights",
    "StoredRiskEngine",
    "TierBand",
    "describe_tier",
]
