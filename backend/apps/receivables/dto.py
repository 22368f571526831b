from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class PaymentStatus(str, Enum):
    PAID = "paid"
    UNPAID = "unpaid"


class SyncState(str, Enum):
    """States of one sync cycle."""

    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    LINKING = "linking"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class NormalizedInvoice:
    external_id: str
    invoice_number: str
    debtor_number: int
    counterparty: str | None
    receipt_date: date | None
    due_date: date | None
    amount_total: Decimal
    amount_paid: Decimal
    amount_open: Decimal
    payment_status: PaymentStatus
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedDebtor:
    number: int
    name: str
    email: str | None = None
    contact_person: str | None = None
    street: str | None = None
    additional_addressline: str | None = None
    zip: str | None = None
    city: str | None = None
    country: str | None = None
    sales_tax_id_eu: str | None = None
    uid_ch: str | None = None
    iban: str | None = None
    bic: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def customer_fields(self) -> dict[str, Any]:
        """Column values for ``portal_customers`` derived from this debtor."""
        return {
            "display_name": self.name,
            "email_contact": self.email,
            "contact_person_name": self.contact_person,
            "street": self.street,
            "additional_addressline": self.additional_addressline,
            "zip": self.zip,
            "city": self.city,
            "country": self.country,
            "sales_tax_id_eu": self.sales_tax_id_eu,
            "uid_ch": self.uid_ch,
            "iban": self.iban,
            "bic": self.bic,
            "bhb_raw_json": self.raw,
        }


@dataclass
class Customer:
    id: str
    debtor_number: int
    display_name: str
    email_contact: str | None = None
    contact_person_name: str | None = None
    street: str | None = None
    additional_addressline: str | None = None
    zip: str | None = None
    city: str | None = None
    country: str | None = None
    sales_tax_id_eu: str | None = None
    uid_ch: str | None = None
    iban: str | None = None
    bic: str | None = None
    is_active: bool = True
    bhb_data_hash: str | None = None
    last_bhb_sync: datetime | None = None

    def is_placeholder(self, placeholder_start: int = 80000) -> bool:
        return self.debtor_number >= placeholder_start


@dataclass
class CachedReceipt:
    id: str
    external_id: str
    debtor_number: int
    invoice_number: str | None
    receipt_date: date | None
    due_date: date | None
    amount_total: Decimal
    amount_open: Decimal
    payment_status: PaymentStatus
    counterparty: str | None = None
    raw_json: dict[str, Any] | None = None
    last_synced_at: datetime | None = None

    @property
    def is_linked(self) -> bool:
        return self.debtor_number > 0


@dataclass
class ManualMapping:
    id: str
    counterparty_name: str
    debtor_number: int
    created_by: str | None = None
    created_at: datetime | None = None


@dataclass
class CounterpartyException:
    id: str
    counterparty_name: str
    reason: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


@dataclass
class UnmatchedCounterparty:
    counterparty_name: str
    invoice_count: int
    amount_open: Decimal


@dataclass
class SyncSummary:
    """Outcome counters of one entity kind within a sync cycle."""

    pulled: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    first_seen: int = 0
    linked: int = 0
    errors: list[str] = field(default_factory=list)

    def add_error(self, error: str) -> None:
        self.errors.append(error)

    def merge(self, other: "SyncSummary") -> "SyncSummary":
        return SyncSummary(
            pulled=self.pulled + other.pulled,
            created=self.created + other.created,
            updated=self.updated + other.updated,
            unchanged=self.unchanged + other.unchanged,
            first_seen=self.first_seen + other.first_seen,
            linked=self.linked + other.linked,
            errors=[*self.errors, *other.errors],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pulled": self.pulled,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "first_seen": self.first_seen,
            "linked": self.linked,
            "errors": list(self.errors),
        }


@dataclass
class CycleReport:
    """Result of one sync cycle, returned even when the cycle failed."""

    run_id: str
    status: str = "running"  # running|success|failed
    state: SyncState = SyncState.IDLE
    debtors: SyncSummary = field(default_factory=SyncSummary)
    invoices: SyncSummary = field(default_factory=SyncSummary)
    error: str | None = None
    sync_log_id: str | None = None

    @property
    def summary(self) -> SyncSummary:
        return self.debtors.merge(self.invoices)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "state": self.state.value,
            "summary": self.summary.to_dict(),
            "debtors": self.debtors.to_dict(),
            "invoices": self.invoices.to_dict(),
            "error": self.error,
            "sync_log_id": self.sync_log_id,
        }
