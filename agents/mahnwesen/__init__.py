"""Mahnwesen - dunning calculator for cached receivables.

Pure read-time enrichment: given an invoice, its customer and the
customer's dunning rules, determine the effective due date, days overdue,
dunning level and accrued interest. Never talks to the upstream system.

Key Components:
- Config: legal interest rate and default payment term
- Policies: dunning level and interest functions
- DTOs: rule sets, stage rules and assessments
"""

__version__ = "1.0.0"

from .config import DunningConfig
from .dto import DunningAssessment, DunningLevel, DunningRuleSet, DunningStageRule
from .policies import (
    DunningPolicies,
    accrued_interest,
    assess_invoice,
    days_overdue,
    dunning_level,
    effective_due_date,
    resolve_interest_rate,
)

__all__ = [
    "DunningConfig",
    "DunningPolicies",
    "DunningAssessment",
    "DunningLevel",
    "DunningRuleSet",
    "DunningStageRule",
    "accrued_interest",
    "assess_invoice",
    "days_overdue",
    "dunning_level",
    "effective_due_date",
    "resolve_interest_rate",
]
