from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from backend.apps.receivables.errors import DuplicateError, NotFoundError, RenumberError
from backend.apps.receivables.normalizer import normalize_invoice
from tests.receivables.factories import cache_receipt, receipt


def _numbers(store):
    return sorted(r.debtor_number for r in store.list_receipts())


def test_create_and_lookup_customer(store):
    created = store.create_customer(debtor_number=10001, display_name="Muster GmbH", fields={"city": "Berlin"})

    assert store.get_customer(created.id).display_name == "Muster GmbH"
    assert store.get_customer_by_number(10001).city == "Berlin"
    assert store.get_customer_by_number(99999) is None


def test_duplicate_customer_number_rejected(store):
    store.create_customer(debtor_number=10001, display_name="A")

    with pytest.raises(DuplicateError):
        store.create_customer(debtor_number=10001, display_name="B")


def test_update_unknown_customer_raises(store):
    with pytest.raises(NotFoundError):
        store.update_customer("missing", {"city": "Köln"})


def test_customer_vanishing_after_write_raises_not_found(store, monkeypatch):
    created = store.create_customer(debtor_number=10001, display_name="Muster GmbH")
    monkeypatch.setattr(store, "get_customer", lambda customer_id: None)

    with pytest.raises(NotFoundError):
        store.create_customer(debtor_number=10002, display_name="Zweite GmbH")
    with pytest.raises(NotFoundError):
        store.update_customer(created.id, {"city": "Köln"})


def test_unknown_customer_field_rejected(store):
    customer = store.create_customer(debtor_number=10001, display_name="A")

    with pytest.raises(ValueError):
        store.update_customer(customer.id, {"shoe_size": 44})


def test_next_placeholder_number(store):
    assert store.next_placeholder_number() == 80000

    store.create_customer(debtor_number=10001, display_name="Real")
    store.create_customer(debtor_number=80007, display_name="Placeholder")

    assert store.next_placeholder_number() == 80008
    assert [c.debtor_number for c in store.list_placeholder_customers()] == [80007]


def test_upsert_receipt_reports_action(store):
    invoice = normalize_invoice(receipt("R-1", amount="-100"))
    assert store.upsert_receipt(invoice, debtor_number=0) == "created"

    invoice.amount_open = Decimal("40.00")
    assert store.upsert_receipt(invoice, debtor_number=0) == "updated"

    stored = store.get_receipt_by_external_id("R-1")
    assert stored.amount_open == Decimal("40.00")
    assert len(store.list_receipts()) == 1


def test_renumber_moves_customer_and_all_linked_receipts(store):
    customer = store.create_customer(debtor_number=80007, display_name="Acme GmbH")
    for eid in ("R-1", "R-2", "R-3"):
        cache_receipt(store, eid, debtor_number=80007)
    cache_receipt(store, "R-other", debtor_number=10001)

    moved = store.renumber_customer(customer.id, 80007, 70003, {"display_name": "ACME GmbH"})

    assert moved == 3
    assert store.get_customer(customer.id).debtor_number == 70003
    assert store.get_customer(customer.id).display_name == "ACME GmbH"
    assert len(store.list_receipts(debtor_number=70003)) == 3
    assert store.list_receipts(debtor_number=80007) == []
    assert len(store.list_receipts(debtor_number=10001)) == 1


def test_renumber_failure_rolls_back_receipt_rewrite(store, monkeypatch):
    customer = store.create_customer(debtor_number=80007, display_name="Acme GmbH")
    for eid in ("R-1", "R-2"):
        cache_receipt(store, eid, debtor_number=80007)

    def boom(conn, customer_id, new_number, values):
        raise OperationalError("UPDATE portal_customers", {}, Exception("disk full"))

    monkeypatch.setattr(store, "_rewrite_customer", boom)

    with pytest.raises(RenumberError):
        store.renumber_customer(customer.id, 80007, 70003)

    assert _numbers(store) == [80007, 80007]
    assert store.get_customer(customer.id).debtor_number == 80007


def test_renumber_into_taken_number_rolls_back(store):
    store.create_customer(debtor_number=70003, display_name="Taken")
    customer = store.create_customer(debtor_number=80007, display_name="Acme GmbH")
    cache_receipt(store, "R-1", debtor_number=80007)

    with pytest.raises(RenumberError):
        store.renumber_customer(customer.id, 80007, 70003)

    assert _numbers(store) == [80007]
    assert store.get_customer(customer.id).debtor_number == 80007


def test_renumber_with_stale_number_is_rejected(store):
    customer = store.create_customer(debtor_number=80007, display_name="Acme GmbH")
    cache_receipt(store, "R-1", debtor_number=80006)

    with pytest.raises(RenumberError):
        store.renumber_customer(customer.id, 80006, 70003)

    assert _numbers(store) == [80006]


def test_link_receipt(store):
    cache_receipt(store, "R-1")
    receipt_id = store.list_unlinked_receipts()[0].id

    store.link_receipt(receipt_id, 10001)

    assert store.list_unlinked_receipts() == []
    with pytest.raises(NotFoundError):
        store.link_receipt("missing", 10001)


def test_mapping_and_exception_names_are_unique(store):
    mapping = store.create_manual_mapping("Fa. Müller", 10001, created_by="ops")
    store.create_exception("Bank AG", reason="Gebühren")

    with pytest.raises(DuplicateError):
        store.create_manual_mapping("Fa. Müller", 10002)
    with pytest.raises(DuplicateError):
        store.create_exception("Bank AG")

    assert store.get_manual_mapping("Fa. Müller").debtor_number == 10001
    assert store.delete_manual_mapping(mapping.id) is True
    assert store.delete_manual_mapping(mapping.id) is False


def test_unmatched_counterparties_exclude_exceptions_and_mapped_names(store):
    cache_receipt(store, "R-1", counterparty="Unbekannt GmbH", amount="-100")
    cache_receipt(store, "R-2", counterparty="Unbekannt GmbH", amount="-50.50")
    cache_receipt(store, "R-3", counterparty="Bank AG")
    cache_receipt(store, "R-4", counterparty="Gemappt KG")
    cache_receipt(store, "R-5", counterparty="Verknüpft GmbH", debtor_number=10001)
    store.create_exception("Bank AG")
    store.create_manual_mapping("Gemappt KG", 10002)

    rows = store.list_unmatched_counterparties()

    assert [(r.counterparty_name, r.invoice_count) for r in rows] == [("Unbekannt GmbH", 2)]
    assert rows[0].amount_open == Decimal("150.50")


def test_placeholder_cleanup_preview_is_read_only(store):
    kept = store.create_customer(debtor_number=80000, display_name="Mit Belegen")
    store.create_customer(debtor_number=80001, display_name="Ohne Belege")
    store.create_customer(debtor_number=10001, display_name="Echt")
    cache_receipt(store, "R-1", debtor_number=80000)

    preview = store.preview_placeholder_cleanup()

    assert [e["debtor_number"] for e in preview["deletable"]] == [80001]
    assert preview["skipped"][0]["id"] == kept.id
    assert preview["skipped"][0]["receipts"] == 1
    assert len(store.list_customers()) == 3


def test_sync_log_round_trip(store):
    log_id = store.start_sync_log(entity_type="both", mode="manual", triggered_by="tester")
    store.finish_sync_log(
        log_id,
        status="success",
        counts={"pulled": 3, "created": 2, "updated": 1, "unchanged": 0},
        details={"run_id": "abc"},
        errors=[],
    )

    (row,) = store.list_sync_logs()
    assert row["status"] == "success"
    assert row["pulled_count"] == 3
    assert row["created_count"] == 2
    assert row["details"] == {"run_id": "abc"}
    assert row["finished_at"] is not None
