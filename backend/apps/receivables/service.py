"""Application-facing facade over the store, the orchestrator and dunning."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any, Callable, Optional

from agents.mahnwesen import DunningAssessment, DunningLevel, DunningPolicies, DunningRuleSet
from backend.core.logging import get_logger

from .dto import CachedReceipt, CounterpartyException, Customer, CycleReport, ManualMapping, UnmatchedCounterparty
from .errors import NotFoundError
from .orchestrator import SyncOrchestrator
from .store import ReconciliationStore

RulesProvider = Callable[[Customer], Optional[DunningRuleSet]]

DUNNING_FILTERS = ("overdue", "due") + tuple(level.value for level in DunningLevel)


def no_rules(customer: Customer) -> Optional[DunningRuleSet]:
    return None


@dataclass
class InvoiceView:
    """Cached receipt enriched with its customer and dunning assessment."""

    receipt: CachedReceipt
    customer: Optional[Customer]
    assessment: DunningAssessment

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.receipt.id,
            "external_id": self.receipt.external_id,
            "invoice_number": self.receipt.invoice_number,
            "debtor_number": self.receipt.debtor_number,
            "customer_name": self.customer.display_name if self.customer else None,
            "counterparty": self.receipt.counterparty,
            "receipt_date": self.receipt.receipt_date.isoformat() if self.receipt.receipt_date else None,
            "amount_total": str(self.receipt.amount_total),
            "amount_open": str(self.receipt.amount_open),
            "payment_status": self.receipt.payment_status.value,
            **self.assessment.to_dict(),
        }


class ReceivablesService:
    def __init__(
        self,
        store: ReconciliationStore,
        orchestrator: SyncOrchestrator,
        rules_provider: RulesProvider = no_rules,
        policies: Optional[DunningPolicies] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.rules_provider = rules_provider
        self.policies = policies or DunningPolicies()
        self.logger = get_logger("receivables.service")

    def trigger_sync(self, entity_type: str = "both", triggered_by: str = "system") -> CycleReport:
        return self.orchestrator.run_cycle(entity_type=entity_type, mode="manual", triggered_by=triggered_by)

    def list_customers(self) -> list[Customer]:
        return self.store.list_customers()

    def list_invoices(
        self,
        status: Optional[str] = None,
        dunning: Optional[str] = None,
        today: Optional[date] = None,
    ) -> list[InvoiceView]:
        """Cached receipts with dunning assessment, optionally filtered.

        ``dunning`` is ``"overdue"`` (any days overdue), ``"due"`` (a level
        above none) or a level value such as ``"dunning1"``.
        """
        if dunning is not None and dunning not in DUNNING_FILTERS:
            raise ValueError(f"dunning filter must be one of {DUNNING_FILTERS}")
        today = today or datetime.now(UTC).date()
        customers = {c.debtor_number: c for c in self.store.list_customers()}
        rules: dict[str, Optional[DunningRuleSet]] = {}

        views = []
        for receipt in self.store.list_receipts(status=status):
            customer = customers.get(receipt.debtor_number) if receipt.is_linked else None
            rule_set = None
            if customer is not None:
                if customer.id not in rules:
                    rules[customer.id] = self.rules_provider(customer)
                rule_set = rules[customer.id]
            assessment = self.policies.assess(receipt, customer, rule_set, today)
            if self._matches_dunning_filter(assessment, dunning):
                views.append(InvoiceView(receipt=receipt, customer=customer, assessment=assessment))
        return views

    @staticmethod
    def _matches_dunning_filter(assessment: DunningAssessment, dunning: Optional[str]) -> bool:
        if dunning is None:
            return True
        if dunning == "overdue":
            return assessment.days_overdue > 0
        if dunning == "due":
            return assessment.dunning_level is not DunningLevel.NONE
        return assessment.dunning_level.value == dunning

    def list_unmatched_counterparties(self) -> list[UnmatchedCounterparty]:
        return self.store.list_unmatched_counterparties()

    def list_manual_mappings(self) -> list[ManualMapping]:
        return self.store.list_manual_mappings()

    def create_manual_mapping(
        self, counterparty_name: str, debtor_number: int, created_by: Optional[str] = None
    ) -> tuple[ManualMapping, int]:
        """Store the mapping and link cached receipts of that counterparty.

        Returns the mapping and the number of receipts linked.
        """
        if self.store.get_customer_by_number(debtor_number) is None:
            raise NotFoundError(f"no customer with debtor number {debtor_number}")
        mapping = self.store.create_manual_mapping(counterparty_name, debtor_number, created_by=created_by)
        linked = self._link_counterparty(counterparty_name, debtor_number, method="manual")
        return mapping, linked

    def delete_manual_mapping(self, mapping_id: str) -> None:
        if not self.store.delete_manual_mapping(mapping_id):
            raise NotFoundError(f"mapping {mapping_id} not found")

    def create_customer_from_counterparty(self, counterparty_name: str) -> tuple[Customer, int]:
        """Create a placeholder customer for an unmatched counterparty.

        The customer gets the next free placeholder number and keeps it until
        a debtor sync renumbers it to the real upstream number.
        """
        customer = self.store.create_customer(
            debtor_number=self.store.next_placeholder_number(), display_name=counterparty_name
        )
        linked = self._link_counterparty(counterparty_name, customer.debtor_number, method="placeholder")
        self.logger.info(
            "placeholder_customer_created",
            extra={"customer_id": customer.id, "debtor_number": customer.debtor_number, "receipts_linked": linked},
        )
        return customer, linked

    def _link_counterparty(self, counterparty_name: str, debtor_number: int, method: str) -> int:
        linked = 0
        for receipt in self.store.list_unlinked_receipts():
            if receipt.counterparty != counterparty_name:
                continue
            self.store.link_receipt(receipt.id, debtor_number)
            linked += 1
            self.logger.info(
                "receipt_linked",
                extra={"receipt_id": receipt.external_id, "debtor_number": debtor_number, "method": method},
            )
        return linked

    def list_exceptions(self) -> list[CounterpartyException]:
        return self.store.list_exceptions()

    def create_exception(
        self, counterparty_name: str, reason: Optional[str] = None, created_by: Optional[str] = None
    ) -> CounterpartyException:
        return self.store.create_exception(counterparty_name, reason=reason, created_by=created_by)

    def delete_exception(self, exception_id: str) -> None:
        if not self.store.delete_exception(exception_id):
            raise NotFoundError(f"exception {exception_id} not found")

    def preview_placeholder_cleanup(self) -> dict[str, list[dict[str, Any]]]:
        return self.store.preview_placeholder_cleanup()

    def list_sync_logs(self, limit: int = 20) -> list[dict[str, Any]]:
        return self.store.list_sync_logs(limit=limit)


def build_service(settings, *, rules_provider: RulesProvider = no_rules, engine=None) -> ReceivablesService:
    """Wire store, BHB client and orchestrator from application settings."""
    from backend.clients.bhb import BhbClient

    if engine is not None:
        store = ReconciliationStore(engine, placeholder_start=settings.PLACEHOLDER_NUMBER_START)
    else:
        store = ReconciliationStore.from_settings(settings)
    orchestrator = SyncOrchestrator.from_settings(store, BhbClient.from_settings(settings), settings)
    return ReceivablesService(store, orchestrator, rules_provider)
