"""Device inventory sources."""

from devsync.sources.api import DefenderApiReader, IntuneApiReader
from devsync.sources.auth import ClientCredentialsTokenProvider
from devsync.sources.base import FetchResult, SourceReader
from devsync.sources.store import StoreSourceReader, defender_store_reader, intune_store_reader

__all__ = [
    "ClientCredentialsTokenProvider",
    "DefenderApiReader",
    "FetchResult",
    "IntuneApiReader",
    "SourceReader",
    "StoreSourceReader",
    "defender_store_reader",
    "intune_store_reader",
]
