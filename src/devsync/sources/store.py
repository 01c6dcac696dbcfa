"""Source readers backed by the document store.

The Intune and Defender ingests land their inventories in the
``devices_intune`` and ``devices_defender`` collections; the cross-sync reads
them back from there.
"""

import asyncio
import time
from typing import Any, Callable

from devsync.errors import SourceError, StoreError
from devsync.models import DefenderDevice, ManagedDevice
from devsync.sources.base import DeviceT, FetchResult, SourceReader
from devsync.storage.documents import DocumentStore
from devsync.utils.logging import get_logger
from devsync.utils.retry import RetryPolicy, Sleep, retry_async

logger = get_logger(__name__)


class StoreSourceReader(SourceReader[DeviceT]):
    """Reads every document of one collection."""

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        device_factory: Callable[[dict[str, Any]], DeviceT],
        name: str | None = None,
        page_size: int = 100,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.collection = collection
        self.device_factory = device_factory
        self.name = name or collection
        self.page_size = page_size
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def fetch_all(self) -> FetchResult[DeviceT]:
        start = time.perf_counter()
        raw: list[dict[str, Any]] = []
        cost = 0.0
        token: str | None = None

        logger.info(f"Fetching all documents from {self.collection}")
        try:
            while True:
                page = await retry_async(
                    lambda: self.store.query_page(
                        self.collection, page_size=self.page_size, continuation_token=token
                    ),
                    self.retry_policy,
                    operation_name=f"Read {self.collection}",
                    sleep=self._sleep,
                )
                raw.extend(page.documents)
                cost += page.cost
                logger.debug(
                    f"Fetched page from {self.collection}: {len(page.documents)} docs "
                    f"({len(raw)} total, {page.cost:.2f} RU)"
                )
                if not page.has_more:
                    break
                token = page.continuation_token
            devices = self._parse(raw)
        except (StoreError, ValueError) as e:
            raise SourceError(f"Failed to fetch documents from {self.collection}: {e}") from e

        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            f"Fetched {len(devices)} documents from {self.collection} "
            f"({cost:.2f} RU, {elapsed:.0f}ms)"
        )
        return FetchResult(devices=devices, cost=cost)


def intune_store_reader(store: DocumentStore, collection: str = "devices_intune", **kwargs: Any) -> StoreSourceReader[ManagedDevice]:
    return StoreSourceReader(store, collection, ManagedDevice.from_dict, name="intune", **kwargs)


def defender_store_reader(store: DocumentStore, collection: str = "devices_defender", **kwargs: Any) -> StoreSourceReader[DefenderDevice]:
    return StoreSourceReader(store, collection, DefenderDevice.from_dict, name="defender", **kwargs)
