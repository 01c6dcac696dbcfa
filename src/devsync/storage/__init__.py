"""DEVSYNC storage modules."""

from devsync.storage.documents import DocumentStore, ItemResult, QueryPage, SQLiteDocumentStore

__all__ = ["DocumentStore", "ItemResult", "QueryPage", "SQLiteDocumentStore"]
