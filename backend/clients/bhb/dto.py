from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class BhbCredentials:
    """API credentials for BuchhaltungsButler.

    ``api_key`` travels in the JSON body of every call; ``api_client`` and
    ``api_secret`` form the HTTP Basic authorization header.
    """

    api_key: str
    api_client: str
    api_secret: str

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key and self.api_client and self.api_secret)

    def basic_auth_header(self) -> str:
        token = base64.b64encode(f"{self.api_client}:{self.api_secret}".encode("utf-8"))
        return "Basic " + token.decode("ascii")

    def __repr__(self) -> str:  # never leak secrets into logs
        return f"BhbCredentials(api_client={self.api_client!r}, api_key=***, api_secret=***)"


@dataclass
class BhbPage:
    """One page of an upstream listing.

    ``received`` counts the records upstream sent, including unusable ones,
    and decides whether the listing continues. A page whose ``data`` is not a
    list counts as full so that paging goes on by offset. ``problems`` lists
    what was dropped.
    """

    items: List[Dict[str, Any]] = field(default_factory=list)
    limit: int = 0
    offset: int = 0
    message: Optional[str] = None
    received: Optional[int] = None
    problems: List[str] = field(default_factory=list)

    @property
    def is_last(self) -> bool:
        received = len(self.items) if self.received is None else self.received
        return self.limit <= 0 or received < self.limit

    @property
    def is_malformed(self) -> bool:
        return bool(self.problems)

    @classmethod
    def from_json(cls, payload: Dict[str, Any], *, limit: int, offset: int) -> "BhbPage":
        raw_items = payload.get("data")
        if raw_items is None:
            raw_items = payload.get("receipts") or []

        problems: List[str] = []
        if not isinstance(raw_items, list):
            problems.append(f"data is {type(raw_items).__name__}, expected list")
            return cls(
                limit=limit, offset=offset, message=payload.get("message"), received=limit, problems=problems
            )

        items = []
        for index, item in enumerate(raw_items):
            if isinstance(item, dict):
                items.append(item)
            else:
                problems.append(f"record {offset + index} is {type(item).__name__}, expected object")
        return cls(
            items=items,
            limit=limit,
            offset=offset,
            message=payload.get("message"),
            received=len(raw_items),
            problems=problems,
        )
