from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else str(v)


def _env_float(name: str, default: float) -> float:
    raw = _env(name, "")
    if not raw.strip():
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _split_csv(value: str) -> List[str]:
    return [x.strip() for x in (value or "").split(",") if x.strip()]


# ---------------------------------------------------------------------
# Client configuration (caller-owned, passed into adapter construction)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class SearchClientConfig:
    """
    OpenSearch connection settings.

    hosts: full URLs ("https://search:9200") or bare hostnames.
    sigv4_region: when set, requests are SigV4-signed with boto3 credentials
    (AWS managed OpenSearch) and username/password are ignored.
    refresh: passed to write calls ("true", "wait_for" or "" for none).

    Client retries stay off: retry policy belongs to the caller.
    """
    hosts: List[str] = field(default_factory=lambda: ["http://localhost:9200"])
    username: str = ""
    password: str = ""
    sigv4_region: str = ""
    verify_certs: bool = True
    timeout_seconds: float = 10.0
    pool_maxsize: int = 100
    refresh: str = ""


@dataclass(frozen=True)
class ObjectStoreClientConfig:
    """
    S3 bucket settings.

    endpoint_url is only needed for S3-compatible stores (MinIO, COS, ...).
    max_pool_connections defaults to the hydration fan-out ceiling.
    """
    bucket: str = ""
    prefix: str = ""
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 30.0
    max_pool_connections: int = 50


@dataclass(frozen=True)
class Settings:
    """
    backend:
      - "opensearch" -> OpenSearchStore
      - "s3"         -> S3Store
    """
    backend: str
    search: SearchClientConfig
    object_store: ObjectStoreClientConfig


# ---------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------

def _normalize_backend(raw: str) -> str:
    v = (raw or "").strip().lower()
    if v in ("opensearch", "elasticsearch", "es", "search"):
        return "opensearch"
    if v in ("s3", "minio", "cos", "object_store", "objectstore"):
        return "s3"
    return "opensearch"


def _load_search_settings() -> SearchClientConfig:
    hosts = _split_csv(_env("OPENSEARCH_ENDPOINT", "") or _env("ES_URLS", "")) or ["http://localhost:9200"]
    sigv4_region = ""
    if _env_bool("OPENSEARCH_SIGV4", False):
        sigv4_region = (_env("AWS_REGION", "") or _env("AWS_DEFAULT_REGION", "")).strip()
        if not sigv4_region:
            raise RuntimeError("AWS_REGION/AWS_DEFAULT_REGION is missing for OpenSearch SigV4")

    return SearchClientConfig(
        hosts=hosts,
        username=_env("OPENSEARCH_USERNAME", "").strip(),
        password=_env("OPENSEARCH_PASSWORD", ""),
        sigv4_region=sigv4_region,
        verify_certs=_env_bool("OPENSEARCH_VERIFY_CERTS", True),
        timeout_seconds=max(1.0, _env_float("OPENSEARCH_TIMEOUT_SECONDS", 10.0)),
        pool_maxsize=max(1, _env_int("OPENSEARCH_POOL_MAXSIZE", 100)),
        refresh=_env("OPENSEARCH_REFRESH", "").strip().lower(),
    )


def _load_object_store_settings() -> ObjectStoreClientConfig:
    prefix = _env("S3_PREFIX", "").strip()
    if prefix and not prefix.endswith("/"):
        prefix = prefix + "/"

    region = (_env("AWS_REGION", "") or _env("AWS_DEFAULT_REGION", "")).strip() or None
    endpoint_url = _env("S3_ENDPOINT_URL", "").strip().rstrip("/") or None

    return ObjectStoreClientConfig(
        bucket=_env("S3_BUCKET", "").strip(),
        prefix=prefix,
        region=region,
        endpoint_url=endpoint_url,
        connect_timeout_seconds=max(1.0, _env_float("S3_CONNECT_TIMEOUT_SECONDS", 10.0)),
        read_timeout_seconds=max(1.0, _env_float("S3_READ_TIMEOUT_SECONDS", 30.0)),
        max_pool_connections=max(1, _env_int("S3_MAX_POOL_CONNECTIONS", 50)),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        backend=_normalize_backend(_env("STORAGE_BACKEND", "opensearch")),
        search=_load_search_settings(),
        object_store=_load_object_store_settings(),
    )
