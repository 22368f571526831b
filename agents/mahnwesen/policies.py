"""Business policies for dunning level and interest determination.

Implements deterministic, functional policies; ``today`` is always passed
in so results never depend on the wall clock.
"""

from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from .config import DEFAULT_PAYMENT_TERM_DAYS, LEGAL_RATE_PERCENT, DunningConfig
from .dto import (
    STAGE_EVALUATION_ORDER,
    DunningAssessment,
    DunningLevel,
    DunningRuleSet,
    DunningStageRule,
)

CENT = Decimal("0.01")
ZERO = Decimal("0")


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def effective_due_date(
    due_date: Optional[date],
    receipt_date: Optional[date],
    payment_term_days: int = DEFAULT_PAYMENT_TERM_DAYS,
) -> Optional[date]:
    """Explicit due date, else receipt date plus payment term, else None."""
    if due_date is not None:
        return due_date
    if receipt_date is not None:
        return receipt_date + timedelta(days=payment_term_days)
    return None


def days_overdue(effective_due: Optional[date], today: date) -> int:
    """Whole days past the due date; 0 when not yet due or unknown."""
    if effective_due is None:
        return 0
    return max(0, (today - effective_due).days)


def dunning_level(
    days: int, stages: Mapping[DunningLevel, DunningStageRule]
) -> DunningLevel:
    """Highest enabled stage whose threshold ``days`` has reached."""
    if days <= 0:
        return DunningLevel.NONE
    for level in STAGE_EVALUATION_ORDER:
        rule = stages.get(level)
        if rule is not None and rule.enabled and days >= rule.days_after_due:
            return level
    return DunningLevel.NONE


def accrued_interest(open_amount: Any, days: int, annual_rate_percent: Any, days_per_year: int = 365) -> Decimal:
    """Simple daily-prorated interest; never negative, unrounded."""
    amount = _to_decimal(open_amount)
    rate = _to_decimal(annual_rate_percent)
    if days <= 0 or amount is None or rate is None or amount <= 0 or rate <= 0:
        return ZERO
    return amount * (rate / Decimal(100)) * Decimal(days) / Decimal(days_per_year)


def resolve_interest_rate(
    rule_set: Optional[DunningRuleSet], legal_rate_percent: Decimal = LEGAL_RATE_PERCENT
) -> Decimal:
    if rule_set is None:
        return ZERO
    if rule_set.use_legal_rate:
        return legal_rate_percent
    return _to_decimal(rule_set.interest_rate_percent) or ZERO


def assess_invoice(
    invoice: Any,
    customer: Any,
    rule_set: Optional[DunningRuleSet],
    today: date,
    config: Optional[DunningConfig] = None,
) -> DunningAssessment:
    """Dunning view of ``invoice`` as of ``today``.

    ``invoice`` needs ``due_date``, ``receipt_date`` and ``amount_open``.
    An unlinked invoice (no ``customer``) or a customer without a rule set
    gets level ``none`` and no interest.
    """
    config = config or DunningConfig()
    effective = effective_due_date(invoice.due_date, invoice.receipt_date, config.payment_term_days)
    overdue = days_overdue(effective, today)

    if customer is None or rule_set is None:
        return DunningAssessment(
            effective_due_date=effective,
            days_overdue=overdue,
            dunning_level=DunningLevel.NONE,
            accrued_interest=ZERO,
        )

    level = dunning_level(max(0, overdue - rule_set.grace_days), rule_set.stages)
    rate = resolve_interest_rate(rule_set, config.legal_rate_percent)
    interest = accrued_interest(invoice.amount_open, overdue, rate, config.days_per_year)
    stage = rule_set.stages.get(level)
    return DunningAssessment(
        effective_due_date=effective,
        days_overdue=overdue,
        dunning_level=level,
        accrued_interest=interest.quantize(CENT, rounding=ROUND_HALF_UP),
        fee=stage.fee if stage is not None else ZERO,
    )


class DunningPolicies:
    """Business policies for dunning decisions.

    All methods are pure functions for deterministic behavior.
    """

    def __init__(self, config: DunningConfig | None = None):
        self.config = config or DunningConfig()

    def effective_due_date(self, due_date: Optional[date], receipt_date: Optional[date]) -> Optional[date]:
        return effective_due_date(due_date, receipt_date, self.config.payment_term_days)

    def days_overdue(self, effective_due: Optional[date], today: date) -> int:
        return days_overdue(effective_due, today)

    def dunning_level(self, days: int, rule_set: Optional[DunningRuleSet]) -> DunningLevel:
        if rule_set is None:
            return DunningLevel.NONE
        return dunning_level(max(0, days - rule_set.grace_days), rule_set.stages)

    def accrued_interest(self, open_amount: Any, days: int, rule_set: Optional[DunningRuleSet]) -> Decimal:
        rate = resolve_interest_rate(rule_set, self.config.legal_rate_percent)
        return accrued_interest(open_amount, days, rate, self.config.days_per_year)

    def assess(self, invoice: Any, customer: Any, rule_set: Optional[DunningRuleSet], today: date) -> DunningAssessment:
        return assess_invoice(invoice, customer, rule_set, today, self.config)
