"""
Tests for config.py, env.py and errors.py.
"""

import os

import pytest
from pathlib import Path

from trustid.config import Settings
from trustid.env import load_env
from trustid.errors import ConflictError, NotFoundError, TrustIdError, ValidationError
from trustid.risk.scoring import RiskWeights


class TestSettings:
    """Test settings loading from environment mappings."""

    def test_defaults(self):
        """An empty environment yields the default settings."""
        settings = Settings.from_env({})

        assert settings.database_url == "sqlite:///data/trustid.db"
        assert settings.log_level == "INFO"
        assert settings.log_dir is None
        assert settings.high_risk_threshold == 70
        assert settings.search_limit == 100
        assert settings.risk.weights == RiskWeights(40, 25, 20, 15)

    def test_overrides(self):
        """TRUSTID_* variables override every default."""
        settings = Settings.from_env({
            "TRUSTID_DATABASE_URL": "sqlite:///tmp/other.db",
            "TRUSTID_LOG_LEVEL": "debug",
            "TRUSTID_LOG_DIR": "/var/log/trustid",
            "TRUSTID_HIGH_RISK_THRESHOLD": "80",
            "TRUSTID_WEIGHT_VERIFICATION": "50",
            "TRUSTID_WEIGHT_INCIDENTS": "5",
        })

        assert settings.database_url == "sqlite:///tmp/other.db"
        assert settings.log_level == "DEBUG"
        assert settings.log_dir == Path("/var/log/trustid")
        assert settings.high_risk_threshold == 80
        assert settings.risk.weights == RiskWeights(50, 25, 20, 5)

    def test_blank_values_use_defaults(self):
        """Whitespace-only values count as unset."""
        assert Settings.from_env({"TRUSTID_SEARCH_LIMIT": " "}).search_limit == 100

    def test_invalid_integer(self):
        """A non-integer threshold is invalid_config."""
        with pytest.raises(ValidationError) as exc_info:
            Settings.from_env({"TRUSTID_HIGH_RISK_THRESHOLD": "high"})
        assert exc_info.value.code == "invalid_config"

    def test_invalid_weights(self):
        """A negative weight is invalid_config."""
        with pytest.raises(ValidationError) as exc_info:
            Settings.from_env({"TRUSTID_WEIGHT_VERIFICATION": "-1"})
        assert exc_info.value.code == "invalid_config"


class TestLoadEnv:
    """Test .env loading with python-dotenv."""

    def test_missing_file(self, tmp_path):
        """A missing .env file is reported, not raised."""
        assert load_env(tmp_path / ".env") is False

    def test_loads_variables(self, tmp_path, monkeypatch):
        """Variables from .env end up in the process environment."""
        monkeypatch.setenv("TRUSTID_TEST_VALUE", "unset")
        monkeypatch.delenv("TRUSTID_TEST_VALUE")
        env_file = tmp_path / ".env"
        env_file.write_text("TRUSTID_TEST_VALUE=from-file\n")

        assert load_env(env_file) is True

        assert os.environ["TRUSTID_TEST_VALUE"] == "from-file"

    def test_process_environment_wins(self, tmp_path, monkeypatch):
        """Values already set in the process are not overridden."""
        monkeypatch.setenv("TRUSTID_TEST_VALUE", "from-process")
        env_file = tmp_path / ".env"
        env_file.write_text("TRUSTID_TEST_VALUE=from-file\n")

        load_env(env_file)

        assert os.environ["TRUSTID_TEST_VALUE"] == "from-process"


class TestErrors:
    """Test the error taxonomy."""

    def test_wire_form(self):
        """Errors serialize to code, message and context."""
        error = ValidationError("Bad score", code="out_of_range", context={"value": 101})
        assert error.to_dict() == {
            "error": "out_of_range",
            "message": "Bad score",
            "context": {"value": 101},
        }
        assert str(error) == "[out_of_range] Bad score (value=101)"

    def test_default_codes(self):
        """Each error class carries its own default code."""
        assert TrustIdError("x").code == "error"
        assert ValidationError("x").code == "invalid_input"
        assert ConflictError("x").code == "conflict"

    def test_validation_error_is_value_error(self):
        """ValidationError can be caught as ValueError."""
        assert isinstance(ValidationError("x"), ValueError)

    def test_not_found(self):
        """NotFoundError keeps the identity id in its context."""
        error = NotFoundError("CID-20260101-ABCDEF")
        assert error.code == "not_found"
        assert error.context == {"identity_id": "CID-20260101-ABCDEF"}
        assert "CID-20260101-ABCDEF" in error.message
