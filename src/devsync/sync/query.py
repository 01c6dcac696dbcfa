"""Paged reads over the persisted sync records."""

from dataclasses import dataclass, field
from typing import Any

from devsync.errors import ValidationError
from devsync.models import SyncState
from devsync.storage.documents import DocumentStore, decode_continuation
from devsync.utils.logging import get_logger

logger = get_logger(__name__)

MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


@dataclass
class SyncPage:
    devices: list[dict[str, Any]] = field(default_factory=list)
    count: int = 0
    has_more: bool = False
    continuation_token: str | None = None
    cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "devices": self.devices,
            "count": self.count,
            "hasMore": self.has_more,
            "continuationToken": self.continuation_token,
        }


class SyncQueryService:
    """Reads sync records, optionally filtered by state."""

    def __init__(self, store: DocumentStore, collection: str = "devices_all") -> None:
        self.store = store
        self.collection = collection

    async def get_synced_devices(
        self,
        sync_state: str | SyncState | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        continuation_token: str | None = None,
    ) -> SyncPage:
        if not MIN_PAGE_SIZE <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"pageSize must be between {MIN_PAGE_SIZE} and {MAX_PAGE_SIZE}"
            )

        filters: dict[str, Any] | None = None
        if sync_state is not None:
            state = sync_state if isinstance(sync_state, SyncState) else SyncState.parse(sync_state)
            filters = {"syncState": state.value}

        # Reject bad tokens before touching the store
        decode_continuation(continuation_token)

        page = await self.store.query_page(
            self.collection,
            filters=filters,
            page_size=page_size,
            continuation_token=continuation_token,
        )
        logger.debug(
            f"Queried {self.collection} (state={filters and filters['syncState']}): "
            f"{len(page.documents)} records, {page.cost:.2f} RU"
        )
        return SyncPage(
            devices=page.documents,
            count=len(page.documents),
            has_more=page.has_more,
            continuation_token=page.continuation_token,
            cost=page.cost,
        )
