"""One BHB sync cycle: debtors, then receipts, then the linking pass.

Pages are fetched sequentially and every page is persisted before the next
one is requested, so an aborted cycle leaves prior pages committed and the
next cycle reconciles from there.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend.core.logging import get_logger
from backend.core.observability import metrics, set_trace_id

from .change_detector import ChangeOutcome, classify_change, compute_debtor_hash
from .dto import CachedReceipt, Customer, CycleReport, NormalizedDebtor, NormalizedInvoice, SyncState, SyncSummary
from .errors import (
    NormalizationError,
    ReceivablesError,
    SyncAlreadyRunningError,
    SyncTimeoutError,
    UpstreamError,
)
from .matching import DEFAULT_THRESHOLD, find_best_match
from .normalizer import extract_debtor_number, normalize_debtor, normalize_invoice
from .store import ReconciliationStore

ENTITY_TYPES = ("debtors", "invoices", "both")

# Normalizers raise NormalizationError for unusable shapes; the builtins cover
# anything a payload trips inside them.
_RECORD_ERRORS = (NormalizationError, TypeError, ValueError, KeyError, AttributeError, ArithmeticError)


def _safe_normalize(normalize: Callable[[Any], Any], raw: Any) -> tuple[Any, Optional[str]]:
    try:
        return normalize(raw), None
    except _RECORD_ERRORS as exc:
        return None, f"{exc.__class__.__name__}: {exc}"


class SyncOrchestrator:
    """Drives sync cycles against one store and one upstream client.

    Only one cycle runs at a time; a concurrent :meth:`run_cycle` raises
    :class:`SyncAlreadyRunningError` instead of waiting.
    """

    def __init__(
        self,
        store: ReconciliationStore,
        client,
        *,
        page_limit: int = 500,
        timeout_seconds: float = 600,
        normalize_workers: int = 1,
        fuzzy_threshold: float = DEFAULT_THRESHOLD,
        amount_epsilon: Decimal = Decimal("0.01"),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.client = client
        self.page_limit = page_limit
        self.timeout_seconds = timeout_seconds
        self.normalize_workers = max(1, int(normalize_workers))
        self.fuzzy_threshold = fuzzy_threshold
        self.amount_epsilon = amount_epsilon
        self._clock = clock
        self._lock = threading.Lock()
        self._state = SyncState.IDLE
        self._deadline: float | None = None
        self.last_report: CycleReport | None = None
        self.logger = get_logger("receivables.sync")

    @classmethod
    def from_settings(cls, store: ReconciliationStore, client, settings) -> "SyncOrchestrator":
        return cls(
            store,
            client,
            page_limit=settings.SYNC_PAGE_LIMIT,
            timeout_seconds=settings.SYNC_TIMEOUT_SECONDS,
            normalize_workers=settings.SYNC_NORMALIZE_WORKERS,
            fuzzy_threshold=settings.FUZZY_MATCH_THRESHOLD,
            amount_epsilon=Decimal(settings.AMOUNT_EPSILON),
        )

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def run_cycle(
        self,
        entity_type: str = "both",
        mode: str = "manual",
        triggered_by: str = "system",
    ) -> CycleReport:
        """Run one sync cycle and return its report.

        Raises:
            ValueError: Unknown ``entity_type``.
            SyncAlreadyRunningError: Another cycle holds the lock.
            ConfigurationError: Credentials are incomplete; raised before any
                network call and before a sync log row is written.
        """
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"entity_type must be one of {ENTITY_TYPES}")
        if not self._lock.acquire(blocking=False):
            raise SyncAlreadyRunningError("a sync cycle is already running")

        try:
            self.client.ensure_configured()
            return self._run_locked(entity_type, mode, triggered_by)
        finally:
            self._deadline = None
            self._lock.release()

    def _run_locked(self, entity_type: str, mode: str, triggered_by: str) -> CycleReport:
        report = CycleReport(run_id=set_trace_id())
        started = time.monotonic()
        self._deadline = self._clock() + self.timeout_seconds
        report.sync_log_id = self.store.start_sync_log(
            entity_type=entity_type, mode=mode, triggered_by=triggered_by
        )
        self.logger.info(
            "bhb_sync_started",
            extra={"run_id": report.run_id, "entity_type": entity_type, "mode": mode, "triggered_by": triggered_by},
        )

        try:
            if entity_type in ("debtors", "both"):
                self.sync_debtors(report)
            if entity_type in ("invoices", "both"):
                self.sync_invoices(report)
                self.link_unlinked_receipts(report.invoices, report=report)
            self._set_state(report, SyncState.DONE)
            report.status = "success"
        except (UpstreamError, SyncTimeoutError) as exc:
            self._fail(report, exc)
        except Exception as exc:
            self._fail(report, exc)
            self._close(report, started)
            raise
        self._close(report, started)
        return report

    def _fail(self, report: CycleReport, exc: Exception) -> None:
        self._set_state(report, SyncState.FAILED)
        report.status = "failed"
        report.error = str(exc) or exc.__class__.__name__
        metrics.increment_sync_errors("cycle")
        self.logger.error(
            "bhb_sync_failed",
            extra={"run_id": report.run_id, "error_type": exc.__class__.__name__, "error": report.error},
        )

    def _close(self, report: CycleReport, started: float) -> None:
        summary = report.summary
        errors = list(summary.errors)
        if report.error:
            errors.append(report.error)
        self.store.finish_sync_log(
            report.sync_log_id,
            status="success" if report.status == "success" else "error",
            counts=summary.to_dict(),
            details={
                "run_id": report.run_id,
                "debtors": report.debtors.to_dict(),
                "invoices": report.invoices.to_dict(),
            },
            errors=errors,
        )
        duration_ms = (time.monotonic() - started) * 1000
        metrics.increment_sync_runs(report.status)
        metrics.record_sync_duration(duration_ms)
        self.last_report = report
        if report.status == "success":
            self.logger.info(
                "bhb_sync_done",
                extra={"run_id": report.run_id, "duration_ms": round(duration_ms, 1), **summary.to_dict()},
            )

    def _set_state(self, report: CycleReport, state: SyncState) -> None:
        if state is self._state:
            return
        self.logger.debug(
            "bhb_sync_state", extra={"run_id": report.run_id, "from": self._state.value, "to": state.value}
        )
        self._state = state
        report.state = state

    def _check_deadline(self) -> None:
        if self._deadline is not None and self._clock() > self._deadline:
            raise SyncTimeoutError(f"sync cycle exceeded {self.timeout_seconds}s")

    def _normalize_page(
        self, items: list[Any], normalize: Callable[[Any], Any], kind: str, summary: SyncSummary
    ) -> list[Any]:
        if self.normalize_workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=self.normalize_workers) as pool:
                outcomes = list(pool.map(lambda raw: _safe_normalize(normalize, raw), items))
        else:
            outcomes = [_safe_normalize(normalize, raw) for raw in items]

        records = []
        for index, (record, error) in enumerate(outcomes):
            if error:
                summary.add_error(f"{kind} record {index}: {error}")
                metrics.increment_sync_errors(kind)
                continue
            if record is None:
                self.logger.debug("bhb_record_skipped", extra={"kind": kind, "index": index})
                continue
            records.append(record)
        return records

    def _record_page_problems(self, page: Any, kind: str, summary: SyncSummary) -> None:
        for problem in page.problems:
            summary.add_error(f"{kind} page at offset {page.offset}: {problem}")
            metrics.increment_sync_errors(kind)

    def _pages(self, report: CycleReport, pages: Iterable[Any]):
        self._set_state(report, SyncState.FETCHING)
        for page in pages:
            self._check_deadline()
            yield page
            self._set_state(report, SyncState.FETCHING)

    # Debtors

    def sync_debtors(self, report: CycleReport) -> SyncSummary:
        summary = report.debtors
        matched_ids: set[str] = set()
        for page in self._pages(report, self.client.iter_debtors(self.page_limit)):
            summary.pulled += len(page.items)
            self._record_page_problems(page, "debtors", summary)
            self._set_state(report, SyncState.NORMALIZING)
            debtors = self._normalize_page(page.items, normalize_debtor, "debtors", summary)
            self._set_state(report, SyncState.PERSISTING)
            for debtor in debtors:
                self._check_deadline()
                try:
                    outcome = self._apply_debtor(debtor, matched_ids, summary)
                except (ReceivablesError, SQLAlchemyError) as exc:
                    summary.add_error(f"debtor {debtor.number}: {exc}")
                    metrics.increment_sync_errors("debtors")
                    self.logger.warning(
                        "bhb_debtor_failed",
                        extra={"debtor_number": debtor.number, "error_type": exc.__class__.__name__},
                    )
                    continue
                metrics.increment_sync_records("debtors", outcome)
        return summary

    def _apply_debtor(self, debtor: NormalizedDebtor, matched_ids: set[str], summary: SyncSummary) -> str:
        new_hash = compute_debtor_hash(debtor)
        synced = {"bhb_data_hash": new_hash, "last_bhb_sync": datetime.now(UTC)}

        existing = self.store.get_customer_by_number(debtor.number)
        if existing is not None:
            if existing.id in matched_ids:
                raise ReceivablesError(f"debtor number {debtor.number} delivered twice")
            matched_ids.add(existing.id)
            outcome = classify_change(existing.bhb_data_hash, new_hash)
            if outcome is ChangeOutcome.UPDATED:
                self.store.update_customer(existing.id, {**debtor.customer_fields(), **synced})
                summary.updated += 1
                return "updated"
            self.store.update_customer(existing.id, synced)
            summary.unchanged += 1
            if outcome is ChangeOutcome.FIRST_SEEN:
                summary.first_seen += 1
                return "first_seen"
            return "unchanged"

        placeholders = [c for c in self.store.list_placeholder_customers() if c.id not in matched_ids]
        match = find_best_match(
            debtor.name, placeholders, name_of=lambda c: c.display_name, threshold=self.fuzzy_threshold
        )
        if match is not None:
            placeholder = match.candidate
            # Claimed before the write so a failed renumber cannot be matched again.
            matched_ids.add(placeholder.id)
            self.store.renumber_customer(
                placeholder.id,
                placeholder.debtor_number,
                debtor.number,
                {**debtor.customer_fields(), **synced},
            )
            summary.updated += 1
            return "renumbered"

        fields = debtor.customer_fields()
        fields.pop("display_name")
        customer = self.store.create_customer(
            debtor_number=debtor.number, display_name=debtor.name, fields={**fields, **synced}
        )
        matched_ids.add(customer.id)
        summary.created += 1
        return "created"

    # Receipts

    def sync_invoices(self, report: CycleReport) -> SyncSummary:
        summary = report.invoices
        known_numbers = {c.debtor_number for c in self.store.list_customers()}
        for page in self._pages(report, self.client.iter_receipts(self.page_limit)):
            summary.pulled += len(page.items)
            self._record_page_problems(page, "invoices", summary)
            self._set_state(report, SyncState.NORMALIZING)
            invoices = self._normalize_page(page.items, normalize_invoice, "invoices", summary)
            self._set_state(report, SyncState.PERSISTING)
            for invoice in invoices:
                self._check_deadline()
                try:
                    outcome = self._apply_invoice(invoice, known_numbers, summary)
                except (ReceivablesError, SQLAlchemyError) as exc:
                    summary.add_error(f"receipt {invoice.external_id}: {exc}")
                    metrics.increment_sync_errors("invoices")
                    continue
                metrics.increment_sync_records("invoices", outcome)
        return summary

    def _apply_invoice(self, invoice: NormalizedInvoice, known_numbers: set[int], summary: SyncSummary) -> str:
        # Only a number some customer owns is stored; anything else stays 0 so
        # the linking pass picks the receipt up. The raw payload keeps it.
        owned = invoice.debtor_number if invoice.debtor_number in known_numbers else 0
        existing = self.store.get_receipt_by_external_id(invoice.external_id)
        if existing is None:
            self.store.upsert_receipt(invoice, debtor_number=owned)
            summary.created += 1
            return "created"
        # A payload without an owned number never unlinks a linked receipt.
        if owned:
            debtor_number = owned
        elif existing.debtor_number in known_numbers:
            debtor_number = existing.debtor_number
        else:
            debtor_number = 0
        if not self.receipt_changed(existing, invoice, debtor_number):
            summary.unchanged += 1
            return "unchanged"
        self.store.upsert_receipt(invoice, debtor_number=debtor_number)
        summary.updated += 1
        return "updated"

    def receipt_changed(self, existing: CachedReceipt, invoice: NormalizedInvoice, debtor_number: int) -> bool:
        if (existing.invoice_number or "") != (invoice.invoice_number or ""):
            return True
        if abs(existing.amount_open - invoice.amount_open) >= self.amount_epsilon:
            return True
        if debtor_number != existing.debtor_number:
            return True
        return existing.payment_status != invoice.payment_status

    # Linking

    def link_unlinked_receipts(
        self, summary: Optional[SyncSummary] = None, *, report: Optional[CycleReport] = None
    ) -> int:
        """Try to link every receipt with debtor number 0; returns links made."""
        summary = summary if summary is not None else SyncSummary()
        if report is not None:
            self._set_state(report, SyncState.LINKING)

        customers = self.store.list_customers()
        by_number = {c.debtor_number: c for c in customers}
        mappings = {m.counterparty_name: m.debtor_number for m in self.store.list_manual_mappings()}

        linked = 0
        for receipt in self.store.list_unlinked_receipts():
            self._check_deadline()
            resolved = self.resolve_link(receipt, customers, by_number, mappings)
            if resolved is None:
                continue
            number, method = resolved
            try:
                self.store.link_receipt(receipt.id, number)
            except (ReceivablesError, SQLAlchemyError) as exc:
                summary.add_error(f"link {receipt.external_id}: {exc}")
                metrics.increment_sync_errors("linking")
                continue
            linked += 1
            metrics.increment_sync_records("invoices", f"linked_{method}")
            self.logger.info(
                "receipt_linked",
                extra={"receipt_id": receipt.external_id, "debtor_number": number, "method": method},
            )
        summary.linked += linked
        return linked

    def resolve_link(
        self,
        receipt: CachedReceipt,
        customers: list[Customer],
        by_number: dict[int, Customer],
        mappings: dict[str, int],
    ) -> Optional[tuple[int, str]]:
        """First successful link for ``receipt``: raw payload, manual mapping, name match."""
        number = extract_debtor_number(receipt.raw_json or {})
        if number and number in by_number:
            return number, "raw"

        name = receipt.counterparty
        if not name:
            return None
        if name in mappings:
            return mappings[name], "manual"

        match = find_best_match(name, customers, name_of=lambda c: c.display_name, threshold=self.fuzzy_threshold)
        if match is not None:
            return match.candidate.debtor_number, match.method
        return None
