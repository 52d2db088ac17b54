"""
Runtime configuration for the identity engine.

Values come from environment variables (optionally loaded from a ``.env``
file by ``trustid.env.load_env``). Risk weights are policy, not logic, so
they are configuration here and injected into each ``RiskEngine``.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .errors import ValidationError
from .risk.scoring import RiskConfig, RiskWeights

DEFAULT_DATABASE_URL = "sqlite:///data/trustid.db"
DEFAULT_HIGH_RISK_THRESHOLD = 70
DEFAULT_SEARCH_LIMIT = 100


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(
            f"Environment variable {name} must be an integer, got '{raw}'",
            code="invalid_config",
        ) from None


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    high_risk_threshold: int = DEFAULT_HIGH_RISK_THRESHOLD
    search_limit: int = DEFAULT_SEARCH_LIMIT
    risk: RiskConfig = field(default_factory=RiskConfig)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read from (default: ``os.environ``)

        Returns:
            Settings instance
        """
        env = os.environ if env is None else env
        defaults = RiskWeights()
        weights = RiskWeights(
            verification=_int_env(env, "TRUSTID_WEIGHT_VERIFICATION", defaults.verification),
            identity_reuse=_int_env(env, "TRUSTID_WEIGHT_IDENTITY_REUSE", defaults.identity_reuse),
            device_reuse=_int_env(env, "TRUSTID_WEIGHT_DEVICE_REUSE", defaults.device_reuse),
            incidents=_int_env(env, "TRUSTID_WEIGHT_INCIDENTS", defaults.incidents),
        )
        log_dir = env.get("TRUSTID_LOG_DIR")
        return cls(
            database_url=env.get("TRUSTID_DATABASE_URL", DEFAULT_DATABASE_URL),
            log_level=env.get("TRUSTID_LOG_LEVEL", "INFO").upper(),
            log_dir=Path(log_dir) if log_dir else None,
            high_risk_threshold=_int_env(env, "TRUSTID_HIGH_RISK_THRESHOLD", DEFAULT_HIGH_RISK_THRESHOLD),
            search_limit=_int_env(env, "TRUSTID_SEARCH_LIMIT", DEFAULT_SEARCH_LIMIT),
            risk=RiskConfig(weights=weights),
        )
