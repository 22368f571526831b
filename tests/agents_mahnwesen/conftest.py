"""Fixtures for the dunning calculator tests."""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from agents.mahnwesen.config import DunningConfig
from agents.mahnwesen.dto import DunningRuleSet
from agents.mahnwesen.policies import DunningPolicies

TODAY = date(2026, 10, 17)


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def config():
    return DunningConfig(legal_rate_percent=Decimal("5.0"), payment_term_days=14)


@pytest.fixture
def policies(config):
    return DunningPolicies(config)


@pytest.fixture
def rule_set():
    return DunningRuleSet()


@pytest.fixture
def make_invoice():
    def _make(due_date=None, receipt_date=None, amount_open="1000.00"):
        return SimpleNamespace(due_date=due_date, receipt_date=receipt_date, amount_open=Decimal(amount_open))

    return _make


@pytest.fixture
def customer():
    return SimpleNamespace(id="c-1", debtor_number=10001, display_name="Muster GmbH")
