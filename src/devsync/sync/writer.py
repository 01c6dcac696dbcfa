"""Sync store writer - batched, throttling-aware writes.

Documents are split into fixed-size batches that run concurrently under a
semaphore. Each batch is independent: a batch that blows up only fails its
own documents. Inside a batch every document is accounted for on its own;
throttled documents are resubmitted with exponential backoff, any other
per-item failure is final on the first attempt.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from devsync.errors import StoreError
from devsync.models import SyncRecord
from devsync.storage.documents import DocumentStore, ItemResult
from devsync.utils.logging import get_logger
from devsync.utils.retry import RETRYABLE_ERRORS, RetryPolicy, Sleep, retry_async

logger = get_logger(__name__)

SendBatch = Callable[[list[Any]], Awaitable[tuple[list[ItemResult], float]]]


@dataclass
class WriteError:
    """A document that could not be written."""
    sync_key: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"syncKey": self.sync_key, "error": self.error}


@dataclass
class BulkResult:
    """Outcome of a bulk upsert."""
    success_count: int = 0
    failure_count: int = 0
    cost: float = 0.0
    errors: list[WriteError] = field(default_factory=list)
    duration_ms: float = 0.0

    def merge(self, other: "BulkResult") -> None:
        self.success_count += other.success_count
        self.failure_count += other.failure_count
        self.cost += other.cost
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "cost": round(self.cost, 2),
            "durationMs": round(self.duration_ms, 1),
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class ClearResult:
    """Outcome of clearing a collection."""
    deleted_count: int = 0
    failure_count: int = 0
    cost: float = 0.0
    duration_ms: float = 0.0


def _chunks(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class SyncStoreWriter:
    """Clears and bulk-writes one collection of the document store."""

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        batch_size: int = 100,
        max_concurrency: int = 4,
        retry_policy: RetryPolicy | None = None,
        key_field: str = "syncKey",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.store = store
        self.collection = collection
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.retry_policy = retry_policy or RetryPolicy()
        self.key_field = key_field
        self._sleep = sleep

    # ========== Public API ==========

    async def bulk_upsert(self, records: Iterable[SyncRecord | dict[str, Any]]) -> BulkResult:
        """Upsert every record; per-record failures end up in ``errors``."""
        start = time.perf_counter()
        documents = [r.to_dict() if isinstance(r, SyncRecord) else dict(r) for r in records]

        if not documents:
            logger.warning(f"Bulk upsert into {self.collection} called with no documents")
            return BulkResult()

        items = [(self._key_of(doc), doc) for doc in documents]
        batches = _chunks(items, self.batch_size)
        logger.info(
            f"Upserting {len(documents)} documents into {self.collection} "
            f"({len(batches)} batches of up to {self.batch_size})"
        )

        result = await self._run_batches(
            batches,
            lambda docs: self.store.upsert_batch(self.collection, docs),
            "upsert",
        )
        result.duration_ms = (time.perf_counter() - start) * 1000

        logger.info(
            f"Upsert into {self.collection} done: {result.success_count} ok, "
            f"{result.failure_count} failed, {result.cost:.2f} RU, {result.duration_ms:.0f}ms"
        )
        if result.failure_count:
            logger.warning(
                f"{result.failure_count} documents failed to upsert, first errors: "
                f"{[e.to_dict() for e in result.errors[:5]]}"
            )
        return result

    async def clear_all(self) -> ClearResult:
        """Delete every document in the collection.

        Listing ids is retried on throttling and otherwise raises; deletes are
        batched and retried the same way as upserts.
        """
        start = time.perf_counter()
        ids, list_cost = await self._list_all_ids()
        logger.info(f"Clearing {len(ids)} documents from {self.collection} ({list_cost:.2f} RU to list)")

        result = ClearResult(cost=list_cost)
        if ids:
            batches = _chunks([(doc_id, doc_id) for doc_id in ids], self.batch_size)
            deleted = await self._run_batches(
                batches,
                lambda batch_ids: self.store.delete_batch(self.collection, batch_ids),
                "delete",
            )
            result.deleted_count = deleted.success_count
            result.failure_count = deleted.failure_count
            result.cost += deleted.cost
            if deleted.failure_count:
                logger.warning(
                    f"{deleted.failure_count} documents could not be deleted from {self.collection}"
                )

        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Cleared {result.deleted_count} documents from {self.collection} "
            f"({result.cost:.2f} RU, {result.duration_ms:.0f}ms)"
        )
        return result

    # ========== Internals ==========

    def _key_of(self, doc: dict[str, Any]) -> str:
        key = doc.get(self.key_field) or doc.get("id")
        return str(key) if key is not None else "<missing>"

    async def _list_all_ids(self) -> tuple[list[str], float]:
        ids: list[str] = []
        cost = 0.0
        token: str | None = None
        while True:
            page = await retry_async(
                lambda: self.store.list_ids(
                    self.collection, page_size=self.batch_size, continuation_token=token
                ),
                self.retry_policy,
                operation_name=f"List ids in {self.collection}",
                sleep=self._sleep,
            )
            cost += page.cost
            ids.extend(doc["id"] for doc in page.documents)
            if not page.has_more:
                return ids, cost
            token = page.continuation_token

    async def _run_batches(
        self, batches: list[list[tuple[str, Any]]], send: SendBatch, verb: str
    ) -> BulkResult:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        total = len(batches)

        async def run(number: int, batch: list[tuple[str, Any]]) -> BulkResult:
            async with semaphore:
                logger.debug(f"{verb.capitalize()} batch {number}/{total} ({len(batch)} items)")
                return await self._write_batch(batch, send, f"{verb} batch {number}/{total}")

        outcomes = await asyncio.gather(*(run(i, b) for i, b in enumerate(batches, start=1)))

        result = BulkResult()
        for outcome in outcomes:
            result.merge(outcome)
        return result

    async def _write_batch(
        self, items: list[tuple[str, Any]], send: SendBatch, label: str
    ) -> BulkResult:
        """Write one batch, resubmitting only the throttled items."""
        outcome = BulkResult()
        pending = items
        policy = self.retry_policy
        retry_number = 0

        while pending:
            try:
                results, cost = await send([payload for _, payload in pending])
                if len(results) != len(pending):
                    raise StoreError(
                        f"Store returned {len(results)} results for {len(pending)} documents"
                    )
            except RETRYABLE_ERRORS as e:
                if retry_number >= policy.max_retries:
                    logger.error(f"{label} still throttled after {retry_number} retries: {e}")
                    self._fail_all(outcome, pending, f"Throttled after {retry_number} retries: {e}")
                    break
                delay = policy.delay_for(retry_number, getattr(e, "retry_after", None))
                logger.warning(f"{label} throttled, retrying {len(pending)} items in {delay:.1f}s: {e}")
                await self._sleep(delay)
                retry_number += 1
                continue
            except Exception as e:
                logger.error(f"{label} failed: {e}")
                self._fail_all(outcome, pending, str(e))
                break

            outcome.cost += cost
            throttled: list[tuple[tuple[str, Any], ItemResult]] = []
            for item, item_result in zip(pending, results):
                if item_result.ok:
                    outcome.success_count += 1
                elif item_result.throttled:
                    throttled.append((item, item_result))
                else:
                    outcome.failure_count += 1
                    outcome.errors.append(WriteError(
                        sync_key=item[0],
                        error=f"HTTP {item_result.status_code}: {item_result.error or 'Failed'}",
                    ))

            if not throttled:
                break

            if retry_number >= policy.max_retries:
                for (key, _), item_result in throttled:
                    outcome.failure_count += 1
                    outcome.errors.append(WriteError(
                        sync_key=key,
                        error=f"HTTP {item_result.status_code}: Throttled after {retry_number} retries",
                    ))
                break

            hints = [r.retry_after for _, r in throttled if r.retry_after]
            delay = policy.delay_for(retry_number, max(hints) if hints else None)
            logger.warning(f"{label}: {len(throttled)} items throttled, retrying in {delay:.1f}s")
            await self._sleep(delay)
            retry_number += 1
            pending = [item for item, _ in throttled]

        return outcome

    @staticmethod
    def _fail_all(outcome: BulkResult, items: list[tuple[str, Any]], error: str) -> None:
        for key, _ in items:
            outcome.failure_count += 1
            outcome.errors.append(WriteError(sync_key=key, error=error))
