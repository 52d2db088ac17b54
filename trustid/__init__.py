"""Identity resolution and risk scoring engine."""

__version__ = "0.1.0"
