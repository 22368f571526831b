"""Stable change digest over the semantic fields of a debtor record."""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Optional

from .dto import NormalizedDebtor

# Fixed order; timestamps and the raw payload are deliberately absent.
HASHED_FIELDS = (
    ("name", "name"),
    ("email", "email"),
    ("contact_person", "contact_person"),
    ("street", "street"),
    ("additional_addressline", "additional_addressline"),
    ("zip", "zip"),
    ("city", "city"),
    ("country", "country"),
    ("sales_tax_id_eu", "sales_tax_id_eu"),
    ("uid_ch", "uid_ch"),
    ("iban", "iban"),
    ("bic", "bic"),
)


class ChangeOutcome(str, Enum):
    FIRST_SEEN = "first_seen"
    UNCHANGED = "unchanged"
    UPDATED = "updated"


def compute_debtor_hash(debtor: NormalizedDebtor) -> str:
    """MD5 hex digest over the canonical, ordered semantic fields."""
    canonical = [[key, getattr(debtor, attr) or ""] for key, attr in HASHED_FIELDS]
    document = json.dumps(canonical, ensure_ascii=False, separators=(",", ":"))
    return hashlib.md5(document.encode("utf-8")).hexdigest()


def classify_change(stored_hash: Optional[str], new_hash: str) -> ChangeOutcome:
    """Classify a debtor observation against the digest stored last time.

    A missing stored digest is ``FIRST_SEEN``: every debtor necessarily differs
    from "nothing" on its first observation, which is not an update.
    """
    if not stored_hash:
        return ChangeOutcome.FIRST_SEEN
    if stored_hash == new_hash:
        return ChangeOutcome.UNCHANGED
    return ChangeOutcome.UPDATED
