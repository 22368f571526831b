import json
import os
import socket
from pathlib import Path

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from backend.apps.receivables.store import ReconciliationStore
from backend.core.observability import metrics


VIOLATIONS = []
ARTIFACTS_DIR = Path("artifacts")
ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
REPORT = ARTIFACTS_DIR / "egress-violations.json"


def _db_endpoint() -> tuple[str | None, int | None]:
    db_url = os.environ.get("DATABASE_URL", "")
    if "@" not in db_url:
        return None, None
    hostport = db_url.split("@", 1)[1].split("/", 1)[0]
    if ":" in hostport:
        host, port = hostport.split(":", 1)
        return host, int(port) if port.isdigit() else None
    return hostport, 5432


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    """Block outbound network access; tests talk to fakes and in-memory SQLite only."""
    db_host, db_port = _db_endpoint()

    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection

    def guard_getaddrinfo(host, *args, **kwargs):
        if db_host and isinstance(host, str) and host == db_host:
            return real_getaddrinfo(host, *args, **kwargs)
        VIOLATIONS.append({"fn": "getaddrinfo", "host": str(host)})
        raise RuntimeError("Egress blocked: getaddrinfo disallowed")

    def guard_create_connection(address, *args, **kwargs):
        host, port = (address[0], address[1]) if isinstance(address, tuple) else (None, None)
        if (db_host and host == db_host) or (db_port and port == db_port):
            return real_create_connection(address, *args, **kwargs)
        VIOLATIONS.append({"fn": "create_connection", "address": str(address)})
        raise RuntimeError("Egress blocked: create_connection disallowed")

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]

    yield

    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]

    REPORT.write_text(json.dumps(VIOLATIONS, indent=2))


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


@pytest.fixture
def engine():
    eng = sa.create_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    s = ReconciliationStore(engine)
    s.create_schema()
    return s
