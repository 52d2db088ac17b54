from .matching import CONFIDENCE_WEIGHTS, FIELD_PRIORITY, Match, select_match
from .resolver import BiometricMatcher, Resolution, Resolver

__all__ = [
    "BiometricMatcher",
    "CONFIDENCE_WEIGHTS",
    "FIELD_PRIORITY",
    "Match",
    "Resolution",
    "Resolver",
    "select_match",
]
