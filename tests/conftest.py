"""Shared test fixtures for the unlock engine, auth, and UI tests."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from core.catalog import SpeciesCatalog
from core.errors import RemoteUnavailable
from core.identity import Identity


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeGateway:
    """
    In-memory stand-in for RemoteUnlockGateway.

    Rows are a set of (account_id, species_id) pairs, so an add of an
    existing pair is a no-op just like the backend upsert.

    Attributes:
        calls: list of (operation, species_id) in call order
        fail: set of (operation, species_id) pairs that raise RemoteUnavailable
        fail_list: when True, list_remote_unlocks raises RemoteUnavailable
        gate: optional asyncio.Event every add/remove waits on before applying
        list_gate: optional asyncio.Event list_remote_unlocks waits on, to hold a
            login open
    """

    def __init__(self, rows=None):
        self.rows: set[tuple[str, str]] = set(rows or ())
        self.calls: list[tuple[str, str | None]] = []
        self.fail: set[tuple[str, str]] = set()
        self.fail_list = False
        self.gate: asyncio.Event | None = None
        self.list_gate: asyncio.Event | None = None

    def remote(self, account_id: str) -> set[str]:
        return {sid for acct, sid in self.rows if acct == account_id}

    async def list_remote_unlocks(self, identity):
        self.calls.append(("list", None))
        if self.list_gate is not None:
            await self.list_gate.wait()
        if self.fail_list:
            raise RemoteUnavailable("list_remote_unlocks")
        return self.remote(identity.id)

    async def add_remote_unlock(self, identity, species_id):
        self.calls.append(("add", species_id))
        if self.gate is not None:
            await self.gate.wait()
        if ("add", species_id) in self.fail:
            raise RemoteUnavailable("add_remote_unlock", species_id, status_code=503)
        self.rows.add((identity.id, species_id))

    async def remove_remote_unlock(self, identity, species_id):
        self.calls.append(("remove", species_id))
        if self.gate is not None:
            await self.gate.wait()
        if ("remove", species_id) in self.fail:
            raise RemoteUnavailable("remove_remote_unlock", species_id, status_code=503)
        self.rows.discard((identity.id, species_id))

    def writes(self):
        return [c for c in self.calls if c[0] != "list"]


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_event_log(tmp_path):
    """Keep events.jsonl out of the working tree."""
    import core.event_recorder as event_recorder

    with patch("core.config.LOG_DIR", str(tmp_path / "logs")), \
         patch.object(event_recorder, "_recorder", None):
        yield tmp_path


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def identity():
    return Identity(id="acct-1", email="diver@example.com", access_token="token-1")


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def reef_catalog():
    """Five species: A-C on the Great Barrier Reef, D untagged, E on the Great Southern Reef."""
    return SpeciesCatalog.from_rows([
        {"id": "A", "name": "Clown Anemonefish", "scientific_name": "Amphiprion percula", "location": "GBR"},
        {"id": "B", "name": "Blue Tang", "scientific_name": "Paracanthurus hepatus", "location": "GBR"},
        {"id": "C", "name": "Moorish Idol", "scientific_name": "Zanclus cornutus", "location": "GBR"},
        {"id": "D", "name": "Yellowtail Kingfish", "scientific_name": "Seriola lalandi", "location": None},
        {"id": "E", "name": "Weedy Seadragon", "scientific_name": "Phyllopteryx taeniolatus", "location": "GSR"},
    ])


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def client(reef_catalog, fake_gateway):
    """Fresh test client with a fixed catalog, fake backend, and no session stores."""
    from starlette.testclient import TestClient
    import app.main as main

    main._unlock_stores.clear()
    with patch.object(main, "_catalog", reef_catalog), \
         patch.object(main, "_gateway", fake_gateway):
        yield TestClient(main.app)
    main._unlock_stores.clear()


@pytest.fixture
def auth_enabled():
    """Mock auth as enabled (Supabase configured)."""
    with patch("app.main.is_auth_enabled", return_value=True), \
         patch("app.auth.is_auth_enabled", return_value=True):
        yield


@pytest.fixture
def auth_disabled():
    """Mock auth as disabled (no Supabase configured)."""
    with patch("app.main.is_auth_enabled", return_value=False), \
         patch("app.auth.is_auth_enabled", return_value=False):
        yield


@pytest.fixture
def login_as(identity):
    """Mock Supabase password login to succeed with the test identity."""
    with patch("app.main.authenticate", new=AsyncMock(return_value=identity)):
        yield identity
