"""Document store for device inventories and sync records.

``DocumentStore`` is the capability the sync engine depends on: paged reads,
per-item batch upserts and deletes, each reporting an abstract request-unit
cost. ``SQLiteDocumentStore`` keeps JSON documents in a single WAL-mode
SQLite table keyed by ``(collection, id)``.
"""

import asyncio
import base64
import json
import math
import re
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from devsync.errors import StoreError, ThrottledError, ValidationError
from devsync.utils.logging import get_logger

logger = get_logger(__name__)

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Request-unit model: reads cost 1 RU per started KB, writes a flat 5 RU on top.
READ_RU_PER_KB = 1.0
WRITE_RU_BASE = 5.0
DELETE_RU = 5.0


@dataclass
class ItemResult:
    """Outcome of one document inside a batch operation."""
    status_code: int
    cost: float = 0.0
    error: str | None = None
    retry_after: float | None = None  # seconds, when the store suggests one

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def throttled(self) -> bool:
        return self.status_code in (429, 503)


@dataclass
class QueryPage:
    """One page of documents plus the token for the next page."""
    documents: list[dict[str, Any]] = field(default_factory=list)
    continuation_token: str | None = None
    cost: float = 0.0

    @property
    def has_more(self) -> bool:
        return self.continuation_token is not None


def encode_continuation(offset: int) -> str:
    """Encode a page offset as an opaque continuation token."""
    return base64.urlsafe_b64encode(f"offset:{offset}".encode()).decode().rstrip("=")


def decode_continuation(token: str | None) -> int:
    """Decode a continuation token back to a page offset."""
    if not token:
        return 0
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
        prefix, _, value = raw.partition(":")
        offset = int(value)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Invalid continuation token") from e
    if prefix != "offset" or offset < 0:
        raise ValidationError("Invalid continuation token")
    return offset


def _kb(payload: str) -> int:
    return max(1, math.ceil(len(payload.encode("utf-8")) / 1024))


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class DocumentStore(ABC):
    """Abstract document store."""

    @abstractmethod
    async def query_page(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        page_size: int = 100,
        continuation_token: str | None = None,
    ) -> QueryPage:
        """Read one page of documents, optionally filtered on top-level fields."""

    @abstractmethod
    async def list_ids(
        self,
        collection: str,
        page_size: int = 100,
        continuation_token: str | None = None,
    ) -> QueryPage:
        """Read one page of ``{"id": ...}`` stubs."""

    @abstractmethod
    async def upsert_batch(
        self, collection: str, documents: list[dict[str, Any]]
    ) -> tuple[list[ItemResult], float]:
        """Upsert documents; one ItemResult per input document, in order."""

    @abstractmethod
    async def delete_batch(
        self, collection: str, ids: list[str]
    ) -> tuple[list[ItemResult], float]:
        """Delete documents by id; one ItemResult per id, in order."""

    @abstractmethod
    async def count(self, collection: str, filters: dict[str, Any] | None = None) -> int:
        """Count documents in a collection."""

    async def delete_all(
        self,
        collection: str,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
        page_size: int = 100,
    ) -> tuple[int, float]:
        """Delete every document (matching ``predicate``) in one pass.

        Returns (deleted_count, cost).
        """
        to_delete: list[str] = []
        cost = 0.0
        token = None
        while True:
            page = await self.query_page(collection, page_size=page_size, continuation_token=token)
            cost += page.cost
            to_delete.extend(
                doc["id"] for doc in page.documents if predicate is None or predicate(doc)
            )
            if not page.has_more:
                break
            token = page.continuation_token

        deleted = 0
        for start in range(0, len(to_delete), page_size):
            results, batch_cost = await self.delete_batch(collection, to_delete[start:start + page_size])
            cost += batch_cost
            deleted += sum(1 for r in results if r.ok)
        return deleted, cost


class SQLiteDocumentStore(DocumentStore):
    """JSON documents in SQLite, one table shared by all collections."""

    def __init__(self, db_path: Path, busy_timeout: float = 30.0) -> None:
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._init_db()

    def get_connection(self) -> sqlite3.Connection:
        """Get database connection with WAL mode for concurrency."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)}")
        return conn

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = self.get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                collection  TEXT NOT NULL,
                id          TEXT NOT NULL,
                body        TEXT NOT NULL,
                updated_at  TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            )
        """)

        conn.commit()
        conn.close()

        logger.debug(f"Document store initialized: {self.db_path}")

    @staticmethod
    def _where(collection: str, filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for name, value in (filters or {}).items():
            if not _FIELD_RE.match(name):
                raise ValidationError(f"Invalid filter field: {name}")
            clauses.append(f"json_extract(body, '$.{name}') = ?")
            params.append(value)
        return " AND ".join(clauses), params

    # ========== Reads ==========

    def _query_page_sync(
        self,
        collection: str,
        filters: dict[str, Any] | None,
        page_size: int,
        continuation_token: str | None,
        ids_only: bool,
    ) -> QueryPage:
        offset = decode_continuation(continuation_token)
        where, params = self._where(collection, filters)
        column = "id" if ids_only else "body"

        conn = self.get_connection()
        try:
            # Fetch one extra row to learn whether another page exists
            rows = conn.execute(
                f"SELECT {column} FROM documents WHERE {where} ORDER BY rowid LIMIT ? OFFSET ?",
                (*params, page_size + 1, offset),
            ).fetchall()
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise ThrottledError(f"Store busy: {e}") from e
            raise StoreError(f"Query on {collection} failed: {e}") from e
        finally:
            conn.close()

        has_more = len(rows) > page_size
        rows = rows[:page_size]

        if ids_only:
            documents = [{"id": row[0]} for row in rows]
            cost = max(1.0, len(rows) * 0.1)
        else:
            documents = [json.loads(row[0]) for row in rows]
            cost = max(1.0, sum(_kb(row[0]) * READ_RU_PER_KB for row in rows))

        return QueryPage(
            documents=documents,
            continuation_token=encode_continuation(offset + page_size) if has_more else None,
            cost=round(cost, 2),
        )

    async def query_page(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        page_size: int = 100,
        continuation_token: str | None = None,
    ) -> QueryPage:
        return await asyncio.to_thread(
            self._query_page_sync, collection, filters, page_size, continuation_token, False
        )

    async def list_ids(
        self,
        collection: str,
        page_size: int = 100,
        continuation_token: str | None = None,
    ) -> QueryPage:
        return await asyncio.to_thread(
            self._query_page_sync, collection, None, page_size, continuation_token, True
        )

    def _count_sync(self, collection: str, filters: dict[str, Any] | None) -> int:
        where, params = self._where(collection, filters)
        conn = self.get_connection()
        try:
            return conn.execute(f"SELECT COUNT(*) FROM documents WHERE {where}", params).fetchone()[0]
        finally:
            conn.close()

    async def count(self, collection: str, filters: dict[str, Any] | None = None) -> int:
        return await asyncio.to_thread(self._count_sync, collection, filters)

    # ========== Writes ==========

    def _upsert_batch_sync(
        self, collection: str, documents: list[dict[str, Any]]
    ) -> tuple[list[ItemResult], float]:
        results: list[ItemResult] = []
        now = datetime.now().isoformat()

        conn = self.get_connection()
        try:
            for doc in documents:
                doc_id = doc.get("id") if isinstance(doc, dict) else None
                if not doc_id:
                    results.append(ItemResult(400, error="Document is missing 'id'"))
                    continue
                try:
                    body = json.dumps(doc)
                except (TypeError, ValueError) as e:
                    results.append(ItemResult(400, error=f"Document is not serializable: {e}"))
                    continue

                try:
                    conn.execute("""
                        INSERT INTO documents (collection, id, body, updated_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(collection, id) DO UPDATE SET
                            body = excluded.body,
                            updated_at = excluded.updated_at
                    """, (collection, str(doc_id), body, now))
                except sqlite3.OperationalError as e:
                    if _is_lock_error(e):
                        results.append(ItemResult(429, error=f"Store busy: {e}"))
                    else:
                        results.append(ItemResult(500, error=str(e)))
                    continue
                except sqlite3.Error as e:
                    results.append(ItemResult(500, error=str(e)))
                    continue

                results.append(ItemResult(200, cost=WRITE_RU_BASE + _kb(body)))

            conn.commit()
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise ThrottledError(f"Store busy on commit: {e}") from e
            raise StoreError(f"Upsert into {collection} failed: {e}") from e
        finally:
            conn.close()

        return results, sum(r.cost for r in results)

    async def upsert_batch(
        self, collection: str, documents: list[dict[str, Any]]
    ) -> tuple[list[ItemResult], float]:
        return await asyncio.to_thread(self._upsert_batch_sync, collection, documents)

    def _delete_batch_sync(self, collection: str, ids: list[str]) -> tuple[list[ItemResult], float]:
        results: list[ItemResult] = []

        conn = self.get_connection()
        try:
            for doc_id in ids:
                try:
                    cursor = conn.execute(
                        "DELETE FROM documents WHERE collection = ? AND id = ?",
                        (collection, doc_id),
                    )
                except sqlite3.OperationalError as e:
                    if _is_lock_error(e):
                        results.append(ItemResult(429, error=f"Store busy: {e}"))
                    else:
                        results.append(ItemResult(500, error=str(e)))
                    continue

                if cursor.rowcount:
                    results.append(ItemResult(204, cost=DELETE_RU))
                else:
                    results.append(ItemResult(404, cost=1.0, error="Not found"))

            conn.commit()
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                raise ThrottledError(f"Store busy on commit: {e}") from e
            raise StoreError(f"Delete from {collection} failed: {e}") from e
        finally:
            conn.close()

        return results, sum(r.cost for r in results)

    async def delete_batch(self, collection: str, ids: list[str]) -> tuple[list[ItemResult], float]:
        return await asyncio.to_thread(self._delete_batch_sync, collection, ids)

    def get_stats(self) -> dict[str, int]:
        """Document counts per collection."""
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT collection, COUNT(*) FROM documents GROUP BY collection"
            ).fetchall()
        finally:
            conn.close()
        return dict(rows)
