from __future__ import annotations

from typing import Optional

from core.settings import Settings, get_settings
from providers.impl.store_opensearch import OpenSearchStore
from providers.impl.store_s3 import S3Store
from storage.interface import Interface

_cached: Optional[Interface] = None


def build_store(settings: Settings) -> Interface:
    if settings.backend == "s3":
        return S3Store(config=settings.object_store)
    return OpenSearchStore(config=settings.search)


def get_store() -> Interface:
    """
    Process-level store for callers that do not wire their own.

    Adapters can always be constructed directly with an explicit client
    config instead.
    """
    global _cached
    if _cached is None:
        _cached = build_store(get_settings())
    return _cached
