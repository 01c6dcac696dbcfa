"""Pytest configuration and fixtures."""

import tempfile
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Callable

import pytest

from devsync.models import DefenderDevice, ManagedDevice
from devsync.storage.documents import (
    DocumentStore,
    ItemResult,
    QueryPage,
    SQLiteDocumentStore,
    decode_continuation,
    encode_continuation,
)


class FakeDocumentStore(DocumentStore):
    """In-memory store with hooks for injecting failures.

    ``upsert_status`` / ``delete_status`` receive the document (or id) and the
    attempt number for that key, and return the status code to report.
    ``upsert_errors`` / ``delete_errors`` / ``read_errors`` are raised by
    successive calls, front first; a ``None`` entry lets that call through.
    """

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.calls: list[tuple[str, str, Any]] = []
        self.attempts: Counter = Counter()
        self.upsert_status: Callable[[dict[str, Any], int], int] | None = None
        self.delete_status: Callable[[str, int], int] | None = None
        self.upsert_errors: list[Exception | None] = []
        self.delete_errors: list[Exception | None] = []
        self.read_errors: list[Exception | None] = []

    def seed(self, collection: str, documents: list[dict[str, Any]]) -> None:
        for doc in documents:
            self.collections[collection][doc["id"]] = dict(doc)

    def documents(self, collection: str) -> list[dict[str, Any]]:
        return list(self.collections[collection].values())

    @staticmethod
    def _raise_next(errors: list[Exception | None]) -> None:
        if errors:
            error = errors.pop(0)
            if error is not None:
                raise error

    async def query_page(self, collection, filters=None, page_size=100, continuation_token=None):
        self.calls.append(("query", collection, continuation_token))
        self._raise_next(self.read_errors)
        docs = [
            d for d in self.collections[collection].values()
            if all(d.get(k) == v for k, v in (filters or {}).items())
        ]
        offset = decode_continuation(continuation_token)
        page = docs[offset:offset + page_size]
        more = offset + page_size < len(docs)
        return QueryPage(
            documents=[dict(d) for d in page],
            continuation_token=encode_continuation(offset + page_size) if more else None,
            cost=1.0,
        )

    async def list_ids(self, collection, page_size=100, continuation_token=None):
        self.calls.append(("list_ids", collection, continuation_token))
        self._raise_next(self.read_errors)
        ids = list(self.collections[collection])
        offset = decode_continuation(continuation_token)
        more = offset + page_size < len(ids)
        return QueryPage(
            documents=[{"id": i} for i in ids[offset:offset + page_size]],
            continuation_token=encode_continuation(offset + page_size) if more else None,
            cost=0.5,
        )

    async def upsert_batch(self, collection, documents):
        self.calls.append(("upsert", collection, [d.get("id") for d in documents]))
        self._raise_next(self.upsert_errors)
        results = []
        for doc in documents:
            key = doc.get("syncKey") or doc["id"]
            self.attempts[key] += 1
            status = self.upsert_status(doc, self.attempts[key]) if self.upsert_status else 200
            if 200 <= status < 300:
                self.collections[collection][doc["id"]] = dict(doc)
                results.append(ItemResult(status, cost=5.0))
            else:
                results.append(ItemResult(status, error="Injected failure"))
        return results, sum(r.cost for r in results)

    async def delete_batch(self, collection, ids):
        self.calls.append(("delete", collection, list(ids)))
        self._raise_next(self.delete_errors)
        results = []
        for doc_id in ids:
            self.attempts[f"delete:{doc_id}"] += 1
            status = self.delete_status(doc_id, self.attempts[f"delete:{doc_id}"]) if self.delete_status else 204
            if 200 <= status < 300:
                self.collections[collection].pop(doc_id, None)
                results.append(ItemResult(status, cost=5.0))
            else:
                results.append(ItemResult(status, error="Injected failure"))
        return results, sum(r.cost for r in results)

    async def count(self, collection, filters=None):
        return len(self.collections[collection])


class SleepRecorder:
    """Stands in for asyncio.sleep and records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def intune(device_id: str, key: str | None = None, name: str | None = None) -> ManagedDevice:
    data = {"id": device_id, "azureADDeviceId": key, "deviceName": name or f"PC-{device_id}"}
    return ManagedDevice.from_dict(data)


def defender(device_id: str, key: str | None = None, dns: str | None = None) -> DefenderDevice:
    data = {"id": device_id, "aadDeviceId": key, "computerDnsName": dns or f"{device_id}.corp.local"}
    return DefenderDevice.from_dict(data)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_store():
    """In-memory document store with failure injection."""
    return FakeDocumentStore()


@pytest.fixture
def sqlite_store(temp_dir):
    """SQLite document store in a temp directory."""
    return SQLiteDocumentStore(temp_dir / "devices.db")


@pytest.fixture
def sleep():
    """Recording replacement for asyncio.sleep."""
    return SleepRecorder()


@pytest.fixture
def make_intune():
    return intune


@pytest.fixture
def make_defender():
    return defender
