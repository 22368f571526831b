"""Fakes and factories for receivables tests."""

from __future__ import annotations

from typing import Any, Iterator

from backend.apps.receivables.errors import ConfigurationError
from backend.apps.receivables.normalizer import normalize_invoice
from backend.clients.bhb.client import BhbClientError
from backend.clients.bhb.dto import BhbPage


class FakeBhbClient:
    """In-memory stand-in for ``BhbClient`` serving fixed debtor/receipt lists."""

    def __init__(self, debtors: list[dict] | None = None, receipts: list[dict] | None = None):
        self.debtors = list(debtors or [])
        self.receipts = list(receipts or [])
        self.configured = True
        self.fail_receipts_at_offset: int | None = None
        self.calls: list[tuple[str, int, int]] = []
        self.on_page = None
        # (kind, offset) -> problems; that page arrives full but without usable records
        self.malformed_pages: dict[tuple[str, int], list[str]] = {}

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("BHB API nicht konfiguriert")

    def iter_debtors(self, page_size: int = 500) -> Iterator[BhbPage]:
        return self._pages("debtors", self.debtors, page_size)

    def iter_receipts(self, page_size: int = 500) -> Iterator[BhbPage]:
        return self._pages("receipts", self.receipts, page_size)

    def _pages(self, kind: str, items: list[dict], page_size: int) -> Iterator[BhbPage]:
        offset = 0
        while True:
            self.calls.append((kind, page_size, offset))
            if kind == "receipts" and self.fail_receipts_at_offset == offset:
                raise BhbClientError("connection reset")
            if self.on_page is not None:
                self.on_page(kind, offset)
            problems = self.malformed_pages.get((kind, offset))
            if problems:
                page = BhbPage(limit=page_size, offset=offset, received=page_size, problems=list(problems))
            else:
                page = BhbPage(items=items[offset : offset + page_size], limit=page_size, offset=offset)
            yield page
            if page.is_last:
                return
            offset += page_size


def receipt(
    external_id: str,
    *,
    amount: Any = "-100.00",
    paid: Any = "0",
    debtor: int | None = None,
    counterparty: str | None = None,
    invoice_number: str | None = None,
    due_date: str | None = "2026-09-01",
    date: str | None = "2026-08-18",
    **extra: Any,
) -> dict:
    raw: dict[str, Any] = {
        "id_by_customer": external_id,
        "amount": amount,
        "amount_paid": paid,
        "invoicenumber": invoice_number or f"RE-{external_id}",
        "date": date,
        "due_date": due_date,
    }
    if debtor is not None:
        raw["counterparty_postingaccount_number"] = debtor
    if counterparty is not None:
        raw["counterparty"] = counterparty
    raw.update(extra)
    return raw


def debtor(number: int, name: str, **extra: Any) -> dict:
    raw = {"postingaccount_number": number, "name": name}
    raw.update(extra)
    return raw


def cache_receipt(store, external_id: str, debtor_number: int = 0, **kwargs: Any) -> None:
    """Put a receipt straight into the cache, bypassing a sync."""
    invoice = normalize_invoice(receipt(external_id, **kwargs))
    store.upsert_receipt(invoice, debtor_number=debtor_number)


