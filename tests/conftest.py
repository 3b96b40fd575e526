"""
Shared fixtures for the storage tests.

No real network or user interaction in tests:
- the on-device store is the in-memory backend (or SQLite under tmp_path)
- Google Drive is an in-memory fake of its REST API
- key derivation runs with the minimum iteration count
"""

import json
from datetime import date
from decimal import Decimal
from typing import Any, Optional

import pytest
from google.oauth2.credentials import Credentials

from peasant_budget.config import (
    EncryptionSettings,
    GoogleDriveSettings,
    LocalStorageSettings,
    OrchestratorSettings,
)
from peasant_budget.models import Transaction, TransactionKind
from peasant_budget.services.encryption import EncryptionService
from peasant_budget.services.kvstore import MemoryStoreBackend
from peasant_budget.services.storage import GoogleDriveProvider, LocalStorageProvider
from peasant_budget.services.storage.google_drive import (
    DRIVE_FILES_URL,
    DRIVE_UPLOAD_URL,
    REVOKE_URL,
    USERINFO_URL,
)


STRONG_PASSPHRASE = "Str0ngPass!"


def make_transaction(transaction_id: str, amount: str = "10.00", **overrides: Any) -> Transaction:
    data = {
        "id": transaction_id,
        "date": date(2024, 3, 1),
        "amount": Decimal(amount),
        "description": f"Transaction {transaction_id}",
        "category": "groceries",
        "kind": TransactionKind.EXPENSE,
    }
    data.update(overrides)
    return Transaction(**data)


def make_transactions(count: int, prefix: str = "t") -> list[Transaction]:
    return [make_transaction(f"{prefix}{i}") for i in range(1, count + 1)]


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture
def encryption_settings():
    return EncryptionSettings(kdf_iterations=1_000)


@pytest.fixture
def local_settings(tmp_path):
    return LocalStorageSettings(database_path=tmp_path / "storage.db")


@pytest.fixture
def drive_settings():
    return GoogleDriveSettings(client_id="test-client-id", client_secret="test-secret")


@pytest.fixture
def orchestrator_settings():
    return OrchestratorSettings(debounce_seconds=0.05)


# =============================================================================
# Local storage
# =============================================================================

@pytest.fixture
def backend():
    """One shared 'browser profile'; open a context per 'tab'."""
    return MemoryStoreBackend()


class RecordingLocalProvider(LocalStorageProvider):
    """Local provider that remembers every envelope it was asked to save."""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.saved = []

    async def save(self, envelope):
        self.saved.append(envelope)
        return await super().save(envelope)


@pytest.fixture
def make_local(local_settings, encryption_settings):
    def factory(store, recording: bool = False) -> LocalStorageProvider:
        cls = RecordingLocalProvider if recording else LocalStorageProvider
        return cls(
            store,
            encryption=EncryptionService(store, encryption_settings),
            settings=local_settings,
        )
    return factory


@pytest.fixture
def store(backend):
    return backend.open_context()


@pytest.fixture
def local_provider(make_local, store):
    return make_local(store)


# =============================================================================
# Google Drive
# =============================================================================

class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None):
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeDriveSession:
    """In-memory stand-in for the Drive v3 REST endpoints the client uses."""

    def __init__(self):
        self.files: dict[str, dict[str, str]] = {}
        self.requests: list[tuple[str, str]] = []
        self.queued_statuses: list[int] = []
        self.revoked: list[str] = []
        self._next_id = 1

    def add_file(self, name: str, content: Any) -> str:
        file_id = f"file-{self._next_id}"
        self._next_id += 1
        self.files[file_id] = {"name": name, "content": json.dumps(content)}
        return file_id

    def content(self, file_id: str) -> Any:
        return json.loads(self.files[file_id]["content"])

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append((method, url))
        params = kwargs.get("params") or {}

        if self.queued_statuses:
            status = self.queued_statuses.pop(0)
            return FakeResponse(status, {"error": {"message": f"Simulated {status}"}})

        if url == USERINFO_URL:
            return FakeResponse(200, {
                "name": "Pat Example",
                "email": "pat@example.com",
                "picture": "https://example.com/pat.png",
            })
        if url == REVOKE_URL:
            self.revoked.append(params["token"])
            return FakeResponse(200, {})

        if url == DRIVE_FILES_URL and method == "GET":
            name = params["q"].split("'")[1]
            files = [
                {"id": file_id, "name": f["name"]}
                for file_id, f in self.files.items()
                if f["name"] == name
            ]
            return FakeResponse(200, {"files": files})

        if url == DRIVE_FILES_URL and method == "POST":
            body = kwargs["json"]
            assert body["parents"] == ["appDataFolder"]
            file_id = self.add_file(body["name"], None)
            self.files[file_id]["content"] = ""
            return FakeResponse(200, {"id": file_id})

        file_id = url.rsplit("/", 1)[1]
        if file_id not in self.files:
            return FakeResponse(404, {"error": {"message": "File not found"}})

        if url.startswith(DRIVE_UPLOAD_URL) and method == "PATCH":
            self.files[file_id]["content"] = kwargs["data"].decode("utf-8")
            return FakeResponse(200, {"id": file_id})
        if method == "GET" and params.get("alt") == "media":
            return FakeResponse(200, json.loads(self.files[file_id]["content"]))
        if method == "DELETE":
            del self.files[file_id]
            return FakeResponse(204)

        return FakeResponse(400, {"error": {"message": f"Unexpected {method} {url}"}})


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConsent:
    """Consent flow that approves (or denies) without a browser."""

    def __init__(self, approve: bool = True):
        self.approve = approve
        self.calls = 0

    def __call__(self, settings: GoogleDriveSettings) -> Credentials:
        self.calls += 1
        if not self.approve:
            raise RuntimeError("access_denied")
        return Credentials(token=f"token-{self.calls}")


@pytest.fixture
def drive_session():
    return FakeDriveSession()


@pytest.fixture
def consent():
    return FakeConsent()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_drive(drive_settings, drive_session, consent, clock):
    def factory(
        settings: Optional[GoogleDriveSettings] = None,
        token_store=None,
    ) -> GoogleDriveProvider:
        return GoogleDriveProvider(
            settings=settings or drive_settings,
            token_store=token_store,
            consent_flow=consent,
            session_factory=lambda credentials: drive_session,
            clock=clock,
        )
    return factory


@pytest.fixture
def drive_provider(make_drive):
    return make_drive()
