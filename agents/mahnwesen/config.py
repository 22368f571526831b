"""Configuration for the dunning calculator.

Provides sensible defaults with environment-based overrides.
"""

import os
from dataclasses import dataclass
from decimal import Decimal

# Statutory default interest used when a rule set asks for the legal rate.
LEGAL_RATE_PERCENT = Decimal("5.0")
DEFAULT_PAYMENT_TERM_DAYS = 14


@dataclass
class DunningConfig:
    """Configuration for dunning calculations.

    Overrides are read from ``MAHNWESEN_LEGAL_RATE_PERCENT`` and
    ``MAHNWESEN_PAYMENT_TERM_DAYS``.
    """

    legal_rate_percent: Decimal = LEGAL_RATE_PERCENT
    payment_term_days: int = DEFAULT_PAYMENT_TERM_DAYS
    days_per_year: int = 365

    @classmethod
    def from_env(cls) -> "DunningConfig":
        """Create configuration with environment overrides applied."""
        config = cls()
        config.legal_rate_percent = Decimal(
            os.getenv("MAHNWESEN_LEGAL_RATE_PERCENT", str(config.legal_rate_percent))
        )
        config.payment_term_days = int(
            os.getenv("MAHNWESEN_PAYMENT_TERM_DAYS", config.payment_term_days)
        )
        return config

    def validate(self) -> list[str]:
        """Validate configuration values.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        if self.legal_rate_percent < 0:
            errors.append("legal_rate_percent must be non-negative")
        if self.payment_term_days < 0:
            errors.append("payment_term_days must be non-negative")
        if self.days_per_year <= 0:
            errors.append("days_per_year must be positive")
        return errors
