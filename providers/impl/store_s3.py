from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from core.settings import ObjectStoreClientConfig, get_settings
from storage.context import OpContext
from storage.errors import (
    BadRequest,
    InternalError,
    InvalidObject,
    KeyNotFound,
    StorageError,
    StorageTimeout,
    Unreachable,
)
from storage.fetch import BoundedFetcher, HydratedRows, MAX_IN_FLIGHT
from storage.interface import ChannelObj
from storage.keys import parse_key, parse_scope
from storage.listing import advance, exhaust, wants_scroll
from storage.predicate import SelectionPredicate
from storage.query import Keyword
from storage.records import check_template, decode_into, new_record, to_document

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("NoSuchKey", "NoSuchObject", "NotFound", "404")


def _translate_error(exc: Exception, key: str = "") -> StorageError:
    if isinstance(exc, ClientError):
        err = exc.response.get("Error") or {}
        code = str(err.get("Code") or "")
        if code in _NOT_FOUND_CODES:
            return KeyNotFound(key=key)
        if code == "NoSuchBucket":
            return Unreachable(key=key, detail=str(exc))
        return InternalError(str(exc), key=key)
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
        return StorageTimeout(key=key)
    if isinstance(exc, EndpointConnectionError):
        return Unreachable(key=key, detail=str(exc))
    return InternalError(str(exc), key=key)


def _encode(obj: Any, key: str) -> Tuple[Any, str]:
    """Return (body, content_type). Raw bytes and readable streams are stored as-is."""
    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj), "application/octet-stream"
    if hasattr(obj, "read"):
        return obj, "application/octet-stream"
    if isinstance(obj, (list, str, int, float, bool)) or obj is None:
        try:
            return json.dumps(obj).encode("utf-8"), "application/json"
        except (TypeError, ValueError) as exc:
            raise InvalidObject(key=key, detail=str(exc)) from exc
    return json.dumps(to_document(obj, key=key)).encode("utf-8"), "application/json"


class S3Store:
    """
    Storage Interface over an S3 bucket (AWS S3 or any S3-compatible store).

    Key "/c/s/id" is object "c/s/id" (after the optional bucket prefix).
    Objects have no backend version, so update/upsert overwrite
    unconditionally and delete_by_query is a no-op.

    list() pages by prefix; in scroll mode the continuation token lives in
    predicate.scroll_id. Bodies are hydrated concurrently, at most
    `max_in_flight` fetches at a time. A failed fetch leaves its slot None
    and is reported in the returned rows' `failures`.
    """

    def __init__(
        self,
        config: Optional[ObjectStoreClientConfig] = None,
        client: Any = None,
        max_in_flight: int = MAX_IN_FLIGHT,
    ) -> None:
        self.config = config or ObjectStoreClientConfig()
        bucket = (self.config.bucket or "").strip()
        if not bucket:
            raise RuntimeError("S3_BUCKET is required for S3 storage")

        prefix = (self.config.prefix or "").strip()
        if prefix and not prefix.endswith("/"):
            prefix = prefix + "/"

        self.bucket = bucket
        self.prefix = prefix
        self.s3 = client if client is not None else self._build_client()
        self.fetcher = BoundedFetcher(max_in_flight=max_in_flight)

    @classmethod
    def from_env(cls) -> "S3Store":
        return cls(config=get_settings().object_store)

    def _build_client(self) -> Any:
        cfg = self.config
        # no client-side retries: retry policy belongs to the caller
        boto_cfg = Config(
            retries={"total_max_attempts": 1, "mode": "standard"},
            region_name=cfg.region,
            connect_timeout=cfg.connect_timeout_seconds,
            read_timeout=cfg.read_timeout_seconds,
            max_pool_connections=cfg.max_pool_connections,
        )
        return boto3.client("s3", endpoint_url=cfg.endpoint_url, config=boto_cfg)

    def close(self) -> None:
        self.fetcher.close()

    def _key(self, key: str) -> str:
        key = (key or "").strip().lstrip("/")
        if self.prefix:
            return f"{self.prefix}{key}"
        return key

    def _storage_key(self, object_key: str) -> str:
        if self.prefix and object_key.startswith(self.prefix):
            object_key = object_key[len(self.prefix):]
        return "/" + object_key

    def _call(self, ctx: OpContext, key: str, fn: Any, **kwargs: Any) -> Any:
        ctx.check(key)
        try:
            return fn(Bucket=self.bucket, **kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise _translate_error(exc, key) from exc

    def _read_json(self, ctx: OpContext, key: str) -> Any:
        resp = self._call(ctx, key, self.s3.get_object, Key=self._key(key))
        body = resp["Body"]
        try:
            raw = body.read()
        except (ClientError, BotoCoreError) as exc:
            raise _translate_error(exc, key) from exc
        finally:
            body.close()
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise InvalidObject(key=key, detail=f"object is not JSON: {exc}") from exc

    # -----------------------------------------------------------------
    # Storage Interface
    # -----------------------------------------------------------------

    def get(self, key: str, out: Any = None, ctx: Optional[OpContext] = None) -> Any:
        parse_key(key)
        ctx = ctx or OpContext.background()
        value = self._read_json(ctx, key)
        if not isinstance(value, dict):
            if out is None:
                return value
            raise InvalidObject(key=key, detail=f"object holds {type(value).__name__}, not a document")
        return decode_into(out, value, key=key)

    def create(self, key: str, obj: Any, ttl: int = 0, ctx: Optional[OpContext] = None) -> None:
        parse_key(key)
        body, content_type = _encode(obj, key)
        ctx = ctx or OpContext.background()
        self._call(ctx, key, self.s3.put_object, Key=self._key(key), Body=body, ContentType=content_type)

    def bulk_create(
        self,
        key: str,
        stream: Iterable[ChannelObj],
        ttl: int = 0,
        ctx: Optional[OpContext] = None,
    ) -> None:
        scope = parse_scope(key)
        if not scope.subcollection:
            raise BadRequest('the key must match "/collection/subcollection" pattern')
        ctx = ctx or OpContext.background()
        base = f"/{scope.collection}/{scope.subcollection}"

        written = failed = 0
        stopped = False
        for item in stream:
            if ctx.done():
                stopped = True
                break
            try:
                self.create(f"{base}/{item.id}", item.data, ttl, ctx)
                written += 1
            except StorageError as e:
                failed += 1
                logger.warning("[S3] bulk_create key=%s/%s failed: %s", base, item.id, e)

        logger.info("[S3] bulk_create key=%s written=%s failed=%s", base, written, failed)
        if stopped:
            ctx.check(key)

    def update(
        self,
        key: str,
        resource_version: int,
        obj: Any,
        ttl: int = 0,
        ctx: Optional[OpContext] = None,
    ) -> None:
        self.create(key, obj, ttl, ctx)

    def upsert(
        self,
        key: str,
        resource_version: int,
        update_obj: Any,
        insert_obj: Any = None,
        ttl: int = 0,
        ctx: Optional[OpContext] = None,
    ) -> None:
        self.create(key, update_obj, ttl, ctx)

    def delete(self, key: str, out: Any = None, ctx: Optional[OpContext] = None) -> None:
        parse_key(key)
        ctx = ctx or OpContext.background()
        # S3 deletes are idempotent; check first so an absent key is reported
        self._call(ctx, key, self.s3.head_object, Key=self._key(key))
        self._call(ctx, key, self.s3.delete_object, Key=self._key(key))

    def delete_by_query(self, key: str, keyword: Keyword, ctx: Optional[OpContext] = None) -> Tuple[int, int]:
        return 0, 0

    def list(
        self,
        key: str,
        predicate: Optional[SelectionPredicate] = None,
        out: Any = dict,
        ctx: Optional[OpContext] = None,
    ) -> List[Any]:
        scope = parse_scope(key)
        key_only = predicate is not None and predicate.key_only
        if not key_only:
            check_template(out)
        ctx = ctx or OpContext.background()

        scroll = wants_scroll(predicate)
        if scroll and predicate.eof:
            exhaust(predicate)
            return []

        prefix = self._key("/".join(p for p in scope if p)) + "/"
        params: Dict[str, Any] = {"Prefix": prefix}
        if predicate is not None and predicate.limit > 0:
            params["MaxKeys"] = predicate.limit
        if scroll and predicate.scroll_id:
            params["ContinuationToken"] = predicate.scroll_id

        resp = self._call(ctx, key, self.s3.list_objects_v2, **params)
        object_keys = [
            c["Key"]
            for c in (resp.get("Contents") or [])
            if c.get("Key") and c["Key"] != prefix
        ]

        if scroll:
            if resp.get("IsTruncated") and resp.get("NextContinuationToken"):
                advance(predicate, resp["NextContinuationToken"])
            else:
                exhaust(predicate)

        keys = [self._storage_key(k) for k in object_keys]
        if key_only:
            return keys

        def fetch_one(storage_key: str, fctx: OpContext) -> Any:
            value = self._read_json(fctx, storage_key)
            if not isinstance(value, dict):
                raise InvalidObject(key=storage_key, detail=f"object holds {type(value).__name__}")
            return new_record(out, value, key=storage_key)

        outcome = self.fetcher.fetch_all(keys, fetch_one, ctx)
        return HydratedRows(outcome.items, outcome.failures)
