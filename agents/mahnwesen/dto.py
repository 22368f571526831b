"""Data Transfer Objects for the dunning calculator.

Rule sets are owned by the surrounding application; the calculator only
reads them.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class DunningLevel(Enum):
    """Dunning levels in ascending severity."""

    NONE = "none"
    REMINDER = "reminder"
    DUNNING_1 = "dunning1"
    DUNNING_2 = "dunning2"
    DUNNING_3 = "dunning3"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = [
    DunningLevel.NONE,
    DunningLevel.REMINDER,
    DunningLevel.DUNNING_1,
    DunningLevel.DUNNING_2,
    DunningLevel.DUNNING_3,
]

# Highest first; evaluation stops at the first stage that applies.
STAGE_EVALUATION_ORDER = tuple(reversed(_LEVEL_ORDER[1:]))


@dataclass(frozen=True)
class DunningStageRule:
    """Threshold of one dunning stage."""

    days_after_due: int
    fee: Decimal = Decimal("0")
    enabled: bool = True


def default_stages() -> Dict[DunningLevel, DunningStageRule]:
    return {
        DunningLevel.REMINDER: DunningStageRule(days_after_due=7, fee=Decimal("0")),
        DunningLevel.DUNNING_1: DunningStageRule(days_after_due=14, fee=Decimal("5")),
        DunningLevel.DUNNING_2: DunningStageRule(days_after_due=28, fee=Decimal("10")),
        DunningLevel.DUNNING_3: DunningStageRule(days_after_due=42, fee=Decimal("15"), enabled=False),
    }


@dataclass
class DunningRuleSet:
    """Per-customer dunning rules."""

    stages: Dict[DunningLevel, DunningStageRule] = field(default_factory=default_stages)
    grace_days: int = 0
    interest_rate_percent: Decimal = Decimal("0")
    use_legal_rate: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DunningRuleSet":
        """Build a rule set from the stored JSON shape.

        Stage keys are ``reminder`` and ``dunning1`` to ``dunning3``, each
        with ``daysAfterDue``/``days_after_due``, ``fee`` and ``enabled``.
        """
        stages = default_stages()
        for key, raw in (data.get("stages") or {}).items():
            level = DunningLevel(key)
            if level is DunningLevel.NONE or not isinstance(raw, dict):
                continue
            fallback = stages[level]
            stages[level] = DunningStageRule(
                days_after_due=int(raw.get("daysAfterDue", raw.get("days_after_due", fallback.days_after_due))),
                fee=Decimal(str(raw.get("fee", fallback.fee))),
                enabled=bool(raw.get("enabled", fallback.enabled)),
            )
        return cls(
            stages=stages,
            grace_days=int(data.get("graceDays", data.get("grace_days", 0)) or 0),
            interest_rate_percent=Decimal(
                str(data.get("interestRatePercent", data.get("interest_rate_percent", "0")) or "0")
            ),
            use_legal_rate=bool(data.get("useLegalRate", data.get("use_legal_rate", False))),
        )


@dataclass(frozen=True)
class DunningAssessment:
    """Read-time dunning view of one invoice."""

    effective_due_date: Optional[date]
    days_overdue: int
    dunning_level: DunningLevel
    accrued_interest: Decimal
    fee: Decimal = Decimal("0")

    @property
    def total_claim_extra(self) -> Decimal:
        return self.accrued_interest + self.fee

    def to_dict(self) -> Dict[str, Any]:
        return {
            "effective_due_date": self.effective_due_date.isoformat() if self.effective_due_date else None,
            "days_overdue": self.days_overdue,
            "dunning_level": self.dunning_level.value,
            "accrued_interest": str(self.accrued_interest),
            "fee": str(self.fee),
            "total_claim_extra": str(self.total_claim_extra),
        }
