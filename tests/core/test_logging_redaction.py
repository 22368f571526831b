"""PII redaction for sync logs: debtor master data must not leak."""

import json
import logging

import pytest

from backend.core import observability
from backend.core.logging import PIIRedactionFilter, get_logger
from backend.core.observability.logging import JSONFormatter, get_trace_id, set_trace_id


def _record(msg, **extra):
    record = logging.LogRecord(
        name="receivables.sync",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestPIIRedactionFilter:
    @pytest.fixture
    def pii(self):
        return PIIRedactionFilter()

    def test_iban_keeps_country_code(self, pii):
        text = pii.redact("Lastschrift von DE89370400440532013000")

        assert "DE89370400440532013000" not in text
        assert "DE****" in text

    def test_email_keeps_domain(self, pii):
        assert pii.redact("an rechnung@muster.example") == "an r*******@muster.example"

    def test_phone_is_masked(self, pii):
        text = pii.redact("Tel. +49 30 1234567")

        assert "1234567" not in text
        assert text.startswith("Tel. +49")

    def test_plain_text_untouched(self, pii):
        assert pii.redact("Muster GmbH, Rechnung RE-2026-001") == "Muster GmbH, Rechnung RE-2026-001"

    def test_filter_rewrites_known_extras(self, pii):
        record = _record("customer_created", email="kontakt@acme.example", debtor_number=70003)

        assert pii.filter(record) is True
        assert record.email == "k******@acme.example"
        assert record.debtor_number == 70003


def test_get_logger_attaches_filter_once():
    logger = get_logger("receivables.redaction-test")
    get_logger("receivables.redaction-test")

    assert sum(isinstance(f, PIIRedactionFilter) for f in logger.filters) == 1


def test_json_formatter_carries_trace_id_and_redacts_extras():
    set_trace_id("run-123")
    try:
        assert get_trace_id() == "run-123"
        formatted = JSONFormatter().format(_record("receipt_linked", counterparty="info@acme.example"))
    finally:
        set_trace_id(None)

    data = json.loads(formatted)
    assert data["trace_id"] == "run-123"
    assert data["msg"] == "receipt_linked"
    assert data["counterparty"] == "i***@acme.example"


def test_generated_trace_id_is_set_for_thread():
    try:
        trace_id = observability.set_trace_id()
        assert trace_id
        assert get_trace_id() == trace_id
    finally:
        set_trace_id(None)
