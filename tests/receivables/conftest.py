import pytest

from backend.apps.receivables.orchestrator import SyncOrchestrator
from tests.receivables.factories import FakeBhbClient


@pytest.fixture
def fake_client():
    return FakeBhbClient()


@pytest.fixture
def orchestrator(store, fake_client):
    return SyncOrchestrator(store, fake_client, page_limit=2)
