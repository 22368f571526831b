"""Persistence for customers, cached receipts, mappings, exceptions and sync logs.

The store is the only writer of reconciliation state. Every public method
runs in its own ``engine.begin()`` transaction; :meth:`renumber_customer` is
the single multi-row operation and commits or rolls back as a unit.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.core.logging import get_logger

from .dto import (
    CachedReceipt,
    CounterpartyException,
    Customer,
    ManualMapping,
    NormalizedInvoice,
    PaymentStatus,
    UnmatchedCounterparty,
)
from .errors import DuplicateError, NotFoundError, RenumberError

PLACEHOLDER_NUMBER_START = 80000

_METADATA = sa.MetaData()

CUSTOMERS_TABLE = sa.Table(
    "portal_customers",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("debtor_postingaccount_number", sa.Integer(), nullable=False, unique=True),
    sa.Column("display_name", sa.Text(), nullable=False),
    sa.Column("email_contact", sa.Text()),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("contact_person_name", sa.Text()),
    sa.Column("street", sa.Text()),
    sa.Column("additional_addressline", sa.Text()),
    sa.Column("zip", sa.Text()),
    sa.Column("city", sa.Text()),
    sa.Column("country", sa.Text()),
    sa.Column("sales_tax_id_eu", sa.Text()),
    sa.Column("uid_ch", sa.Text()),
    sa.Column("iban", sa.Text()),
    sa.Column("bic", sa.Text()),
    sa.Column("bhb_raw_json", sa.JSON()),
    sa.Column("bhb_data_hash", sa.String(64)),
    sa.Column("last_bhb_sync", sa.DateTime(timezone=True)),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    extend_existing=True,
)

RECEIPTS_TABLE = sa.Table(
    "bhb_receipts_cache",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("id_by_customer", sa.Text(), nullable=False, unique=True),
    sa.Column("debtor_postingaccount_number", sa.Integer(), nullable=False, index=True),
    sa.Column("invoice_number", sa.Text()),
    sa.Column("receipt_date", sa.Date()),
    sa.Column("due_date", sa.Date(), index=True),
    sa.Column("amount_total", sa.Numeric(12, 2), nullable=False),
    sa.Column("amount_open", sa.Numeric(12, 2), nullable=False),
    sa.Column("payment_status", sa.String(16), nullable=False, index=True),
    sa.Column("counterparty", sa.Text()),
    sa.Column("raw_json", sa.JSON()),
    sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
    extend_existing=True,
)

MAPPINGS_TABLE = sa.Table(
    "manual_mappings",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("counterparty_name", sa.Text(), nullable=False, unique=True),
    sa.Column("debtor_postingaccount_number", sa.Integer(), nullable=False),
    sa.Column("created_by", sa.Text()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    extend_existing=True,
)

EXCEPTIONS_TABLE = sa.Table(
    "counterparty_exceptions",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("counterparty_name", sa.Text(), nullable=False, unique=True),
    sa.Column("reason", sa.Text()),
    sa.Column("created_by", sa.Text()),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    extend_existing=True,
)

SYNC_LOG_TABLE = sa.Table(
    "sync_log",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("entity_type", sa.String(16), nullable=False),
    sa.Column("mode", sa.String(16), nullable=False),
    sa.Column("direction", sa.String(16), nullable=False, server_default="pull"),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("triggered_by", sa.Text()),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("finished_at", sa.DateTime(timezone=True)),
    sa.Column("pulled_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("created_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("updated_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("unchanged_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("details", sa.JSON()),
    sa.Column("errors", sa.JSON()),
    extend_existing=True,
)

CUSTOMER_FIELDS = frozenset(
    c.name for c in CUSTOMERS_TABLE.columns if c.name not in ("id", "created_at")
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def _row_to_customer(row: Any) -> Customer:
    return Customer(
        id=row.id,
        debtor_number=row.debtor_postingaccount_number,
        display_name=row.display_name,
        email_contact=row.email_contact,
        contact_person_name=row.contact_person_name,
        street=row.street,
        additional_addressline=row.additional_addressline,
        zip=row.zip,
        city=row.city,
        country=row.country,
        sales_tax_id_eu=row.sales_tax_id_eu,
        uid_ch=row.uid_ch,
        iban=row.iban,
        bic=row.bic,
        is_active=bool(row.is_active),
        bhb_data_hash=row.bhb_data_hash,
        last_bhb_sync=row.last_bhb_sync,
    )


def _row_to_receipt(row: Any) -> CachedReceipt:
    return CachedReceipt(
        id=row.id,
        external_id=row.id_by_customer,
        debtor_number=row.debtor_postingaccount_number,
        invoice_number=row.invoice_number,
        receipt_date=row.receipt_date,
        due_date=row.due_date,
        amount_total=Decimal(row.amount_total),
        amount_open=Decimal(row.amount_open),
        payment_status=PaymentStatus(row.payment_status),
        counterparty=row.counterparty,
        raw_json=row.raw_json,
        last_synced_at=row.last_synced_at,
    )


class ReconciliationStore:
    """SQLAlchemy Core backed store for the reconciliation engine."""

    def __init__(
        self,
        engine: Engine,
        *,
        placeholder_start: int = PLACEHOLDER_NUMBER_START,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.engine = engine
        self.placeholder_start = placeholder_start
        self._clock = clock
        self.logger = get_logger("receivables.store")

    @classmethod
    def from_settings(cls, settings) -> "ReconciliationStore":
        engine = sa.create_engine(settings.database_url, future=True)
        return cls(engine, placeholder_start=settings.PLACEHOLDER_NUMBER_START)

    def create_schema(self) -> None:
        _METADATA.create_all(self.engine)

    # Customers

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        with self.engine.begin() as conn:
            row = conn.execute(
                sa.select(CUSTOMERS_TABLE).where(CUSTOMERS_TABLE.c.id == customer_id)
            ).fetchone()
        return _row_to_customer(row) if row else None

    def get_customer_by_number(self, debtor_number: int) -> Optional[Customer]:
        with self.engine.begin() as conn:
            row = conn.execute(
                sa.select(CUSTOMERS_TABLE).where(
                    CUSTOMERS_TABLE.c.debtor_postingaccount_number == debtor_number
                )
            ).fetchone()
        return _row_to_customer(row) if row else None

    def list_customers(self) -> list[Customer]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(CUSTOMERS_TABLE).order_by(
                    CUSTOMERS_TABLE.c.debtor_postingaccount_number
                )
            ).fetchall()
        return [_row_to_customer(row) for row in rows]

    def list_placeholder_customers(self) -> list[Customer]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(CUSTOMERS_TABLE)
                .where(CUSTOMERS_TABLE.c.debtor_postingaccount_number >= self.placeholder_start)
                .order_by(CUSTOMERS_TABLE.c.debtor_postingaccount_number)
            ).fetchall()
        return [_row_to_customer(row) for row in rows]

    def next_placeholder_number(self) -> int:
        with self.engine.begin() as conn:
            current = conn.execute(
                sa.select(sa.func.max(CUSTOMERS_TABLE.c.debtor_postingaccount_number)).where(
                    CUSTOMERS_TABLE.c.debtor_postingaccount_number >= self.placeholder_start
                )
            ).scalar()
        return self.placeholder_start if current is None else int(current) + 1

    def create_customer(
        self,
        *,
        debtor_number: int,
        display_name: str,
        fields: Optional[dict[str, Any]] = None,
    ) -> Customer:
        values = self._customer_values(fields or {})
        now = self._clock()
        customer_id = _new_id()
        values.update(
            id=customer_id,
            debtor_postingaccount_number=debtor_number,
            display_name=display_name,
            created_at=now,
            updated_at=now,
        )
        values.setdefault("is_active", True)
        try:
            with self.engine.begin() as conn:
                conn.execute(sa.insert(CUSTOMERS_TABLE).values(**values))
        except IntegrityError as exc:
            raise DuplicateError(f"debtor number {debtor_number} already assigned") from exc
        customer = self.get_customer(customer_id)
        if customer is None:
            raise NotFoundError(f"customer {customer_id} not found")
        return customer

    def update_customer(self, customer_id: str, fields: dict[str, Any]) -> Customer:
        values = self._customer_values(fields)
        values["updated_at"] = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(CUSTOMERS_TABLE)
                .where(CUSTOMERS_TABLE.c.id == customer_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"customer {customer_id} not found")
        customer = self.get_customer(customer_id)
        if customer is None:
            raise NotFoundError(f"customer {customer_id} not found")
        return customer

    def renumber_customer(
        self,
        customer_id: str,
        old_number: int,
        new_number: int,
        new_fields: Optional[dict[str, Any]] = None,
    ) -> int:
        """Move a customer and all receipts linked to ``old_number`` to ``new_number``.

        Receipts are linked by number, not by customer id, so both rewrites
        happen in one transaction. Returns the number of receipts rewritten.

        Raises:
            RenumberError: If the customer is missing, no longer holds
                ``old_number``, ``new_number`` is taken, or any statement fails.
                Nothing is written in that case.
        """
        values = self._customer_values(new_fields or {})
        values.pop("debtor_postingaccount_number", None)
        try:
            with self.engine.begin() as conn:
                current = conn.execute(
                    sa.select(CUSTOMERS_TABLE.c.debtor_postingaccount_number).where(
                        CUSTOMERS_TABLE.c.id == customer_id
                    )
                ).scalar()
                if current is None:
                    raise RenumberError(f"customer {customer_id} not found")
                if current != old_number:
                    raise RenumberError(
                        f"customer {customer_id} holds {current}, expected {old_number}"
                    )
                rewritten = self._rewrite_receipts(conn, old_number, new_number)
                self._rewrite_customer(conn, customer_id, new_number, values)
        except RenumberError:
            raise
        except SQLAlchemyError as exc:
            raise RenumberError(
                f"renumbering {old_number} -> {new_number} failed: {exc.__class__.__name__}"
            ) from exc

        self.logger.info(
            "customer_renumbered",
            extra={
                "customer_id": customer_id,
                "old_number": old_number,
                "new_number": new_number,
                "receipts_updated": rewritten,
            },
        )
        return rewritten

    def _rewrite_receipts(self, conn: Connection, old_number: int, new_number: int) -> int:
        result = conn.execute(
            sa.update(RECEIPTS_TABLE)
            .where(RECEIPTS_TABLE.c.debtor_postingaccount_number == old_number)
            .values(debtor_postingaccount_number=new_number)
        )
        return int(result.rowcount or 0)

    def _rewrite_customer(
        self, conn: Connection, customer_id: str, new_number: int, values: dict[str, Any]
    ) -> None:
        conn.execute(
            sa.update(CUSTOMERS_TABLE)
            .where(CUSTOMERS_TABLE.c.id == customer_id)
            .values(debtor_postingaccount_number=new_number, updated_at=self._clock(), **values)
        )

    def preview_placeholder_cleanup(self) -> dict[str, list[dict[str, Any]]]:
        """Placeholder customers split into deletable (no receipts) and kept ones."""
        counts = self._receipt_counts_by_number()
        deletable: list[dict[str, Any]] = []
        skipped: list[dict[str, Any]] = []
        for customer in self.list_placeholder_customers():
            entry = {
                "id": customer.id,
                "debtor_number": customer.debtor_number,
                "display_name": customer.display_name,
                "receipts": counts.get(customer.debtor_number, 0),
            }
            (skipped if entry["receipts"] else deletable).append(entry)
        return {"deletable": deletable, "skipped": skipped}

    def _customer_values(self, fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - CUSTOMER_FIELDS
        if unknown:
            raise ValueError(f"unknown customer fields: {sorted(unknown)}")
        return dict(fields)

    # Receipts

    def get_receipt_by_external_id(self, external_id: str) -> Optional[CachedReceipt]:
        with self.engine.begin() as conn:
            row = conn.execute(
                sa.select(RECEIPTS_TABLE).where(RECEIPTS_TABLE.c.id_by_customer == external_id)
            ).fetchone()
        return _row_to_receipt(row) if row else None

    def upsert_receipt(self, invoice: NormalizedInvoice, *, debtor_number: int) -> str:
        """Insert or rewrite the receipt keyed by its external id.

        Returns ``"created"`` or ``"updated"``.
        """
        values = {
            "debtor_postingaccount_number": debtor_number,
            "invoice_number": invoice.invoice_number,
            "receipt_date": invoice.receipt_date,
            "due_date": invoice.due_date,
            "amount_total": invoice.amount_total,
            "amount_open": invoice.amount_open,
            "payment_status": invoice.payment_status.value,
            "counterparty": invoice.counterparty,
            "raw_json": invoice.raw,
            "last_synced_at": self._clock(),
        }
        with self.engine.begin() as conn:
            existing = conn.execute(
                sa.select(RECEIPTS_TABLE.c.id).where(
                    RECEIPTS_TABLE.c.id_by_customer == invoice.external_id
                )
            ).fetchone()
            if existing:
                conn.execute(
                    sa.update(RECEIPTS_TABLE)
                    .where(RECEIPTS_TABLE.c.id == existing.id)
                    .values(**values)
                )
                return "updated"
            conn.execute(
                sa.insert(RECEIPTS_TABLE).values(
                    id=_new_id(), id_by_customer=invoice.external_id, **values
                )
            )
            return "created"

    def list_receipts(
        self, *, status: Optional[str] = None, debtor_number: Optional[int] = None
    ) -> list[CachedReceipt]:
        stmt = sa.select(RECEIPTS_TABLE)
        if status and status != "all":
            stmt = stmt.where(RECEIPTS_TABLE.c.payment_status == status)
        if debtor_number is not None:
            stmt = stmt.where(RECEIPTS_TABLE.c.debtor_postingaccount_number == debtor_number)
        stmt = stmt.order_by(RECEIPTS_TABLE.c.due_date, RECEIPTS_TABLE.c.id_by_customer)
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_receipt(row) for row in rows]

    def list_unlinked_receipts(self) -> list[CachedReceipt]:
        return self.list_receipts(debtor_number=0)

    def link_receipt(self, receipt_id: str, debtor_number: int) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(RECEIPTS_TABLE)
                .where(RECEIPTS_TABLE.c.id == receipt_id)
                .values(debtor_postingaccount_number=debtor_number)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"receipt {receipt_id} not found")

    def _receipt_counts_by_number(self) -> dict[int, int]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(
                    RECEIPTS_TABLE.c.debtor_postingaccount_number,
                    sa.func.count(RECEIPTS_TABLE.c.id),
                ).group_by(RECEIPTS_TABLE.c.debtor_postingaccount_number)
            ).fetchall()
        return {int(number): int(count) for number, count in rows}

    # Manual mappings

    def list_manual_mappings(self) -> list[ManualMapping]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(MAPPINGS_TABLE).order_by(MAPPINGS_TABLE.c.counterparty_name)
            ).fetchall()
        return [self._row_to_mapping(row) for row in rows]

    def get_manual_mapping(self, counterparty_name: str) -> Optional[ManualMapping]:
        with self.engine.begin() as conn:
            row = conn.execute(
                sa.select(MAPPINGS_TABLE).where(
                    MAPPINGS_TABLE.c.counterparty_name == counterparty_name
                )
            ).fetchone()
        return self._row_to_mapping(row) if row else None

    def create_manual_mapping(
        self, counterparty_name: str, debtor_number: int, *, created_by: Optional[str] = None
    ) -> ManualMapping:
        mapping = ManualMapping(
            id=_new_id(),
            counterparty_name=counterparty_name,
            debtor_number=debtor_number,
            created_by=created_by,
            created_at=self._clock(),
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    sa.insert(MAPPINGS_TABLE).values(
                        id=mapping.id,
                        counterparty_name=mapping.counterparty_name,
                        debtor_postingaccount_number=mapping.debtor_number,
                        created_by=mapping.created_by,
                        created_at=mapping.created_at,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateError(f"mapping for '{counterparty_name}' already exists") from exc
        return mapping

    def delete_manual_mapping(self, mapping_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(sa.delete(MAPPINGS_TABLE).where(MAPPINGS_TABLE.c.id == mapping_id))
        return bool(result.rowcount)

    @staticmethod
    def _row_to_mapping(row: Any) -> ManualMapping:
        return ManualMapping(
            id=row.id,
            counterparty_name=row.counterparty_name,
            debtor_number=row.debtor_postingaccount_number,
            created_by=row.created_by,
            created_at=row.created_at,
        )

    # Exceptions

    def list_exceptions(self) -> list[CounterpartyException]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(EXCEPTIONS_TABLE).order_by(EXCEPTIONS_TABLE.c.counterparty_name)
            ).fetchall()
        return [
            CounterpartyException(
                id=row.id,
                counterparty_name=row.counterparty_name,
                reason=row.reason,
                created_by=row.created_by,
                created_at=row.created_at,
            )
            for row in rows
        ]

    def create_exception(
        self,
        counterparty_name: str,
        *,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> CounterpartyException:
        exception = CounterpartyException(
            id=_new_id(),
            counterparty_name=counterparty_name,
            reason=reason,
            created_by=created_by,
            created_at=self._clock(),
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    sa.insert(EXCEPTIONS_TABLE).values(
                        id=exception.id,
                        counterparty_name=exception.counterparty_name,
                        reason=exception.reason,
                        created_by=exception.created_by,
                        created_at=exception.created_at,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateError(f"exception for '{counterparty_name}' already exists") from exc
        return exception

    def delete_exception(self, exception_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.delete(EXCEPTIONS_TABLE).where(EXCEPTIONS_TABLE.c.id == exception_id)
            )
        return bool(result.rowcount)

    def list_unmatched_counterparties(self) -> list[UnmatchedCounterparty]:
        """Counterparty names of unlinked receipts, minus exceptions and mapped names."""
        excluded = {e.counterparty_name for e in self.list_exceptions()}
        excluded.update(m.counterparty_name for m in self.list_manual_mappings())

        counts: dict[str, int] = defaultdict(int)
        open_sums: dict[str, Decimal] = defaultdict(Decimal)
        for receipt in self.list_unlinked_receipts():
            name = receipt.counterparty
            if not name or name in excluded:
                continue
            counts[name] += 1
            open_sums[name] += receipt.amount_open

        return [
            UnmatchedCounterparty(
                counterparty_name=name, invoice_count=counts[name], amount_open=open_sums[name]
            )
            for name in sorted(counts)
        ]

    # Sync log

    def start_sync_log(self, *, entity_type: str, mode: str, triggered_by: str) -> str:
        log_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                sa.insert(SYNC_LOG_TABLE).values(
                    id=log_id,
                    entity_type=entity_type,
                    mode=mode,
                    direction="pull",
                    status="running",
                    triggered_by=triggered_by,
                    started_at=self._clock(),
                )
            )
        return log_id

    def finish_sync_log(
        self,
        log_id: str,
        *,
        status: str,
        counts: Optional[dict[str, int]] = None,
        details: Optional[dict[str, Any]] = None,
        errors: Optional[Iterable[str]] = None,
    ) -> None:
        counts = counts or {}
        with self.engine.begin() as conn:
            conn.execute(
                sa.update(SYNC_LOG_TABLE)
                .where(SYNC_LOG_TABLE.c.id == log_id)
                .values(
                    status=status,
                    finished_at=self._clock(),
                    pulled_count=counts.get("pulled", 0),
                    created_count=counts.get("created", 0),
                    updated_count=counts.get("updated", 0),
                    unchanged_count=counts.get("unchanged", 0),
                    details=details,
                    errors=list(errors) if errors is not None else None,
                )
            )

    def list_sync_logs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(SYNC_LOG_TABLE)
                .order_by(SYNC_LOG_TABLE.c.started_at.desc())
                .limit(limit)
            ).mappings().fetchall()
        return [dict(row) for row in rows]
