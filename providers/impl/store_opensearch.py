from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import (
    ConflictError,
    ConnectionError as OpenSearchConnectionError,
    ConnectionTimeout,
    NotFoundError,
    OpenSearchException,
)
from opensearchpy.helpers import bulk
from requests_aws4auth import AWS4Auth

from core.settings import SearchClientConfig, get_settings
from storage.context import OpContext
from storage.errors import (
    BadRequest,
    InternalError,
    KeyExists,
    KeyNotFound,
    ResourceVersionConflict,
    StorageError,
    StorageTimeout,
    Unreachable,
)
from storage.interface import ChannelObj
from storage.keys import ParsedKey, parse_key, parse_scope
from storage.listing import (
    ScrollState,
    advance,
    check_result_window,
    decode_rows,
    exhaust,
    keep_alive,
    scroll_state,
    wants_scroll,
)
from storage.predicate import SelectionPredicate
from storage.query import Keyword, translate
from storage.records import check_template, decode_into, to_document
from storage.versioning import set_version

logger = logging.getLogger(__name__)

# OpenSearch has no mapping types: "/collection/subcollection" -> index "collection-subcollection"
INDEX_SEPARATOR = "-"

BULK_FLUSH_ACTIONS = 1000
BULK_FLUSH_INTERVAL_SECONDS = 1.0


def _translate_error(exc: OpenSearchException, key: str = "", version: int = 0) -> StorageError:
    """
    Classify an opensearch-py failure.

    Not-found and already-exists are recognized from the error itself;
    anything unrecognized becomes InternalError with the original message.
    """
    if isinstance(exc, NotFoundError):
        return KeyNotFound(key=key, resource_version=version, detail=str(getattr(exc, "error", "") or ""))
    if isinstance(exc, ConflictError):
        text = str(exc).lower()
        if "already exists" in text or "already_exists" in text:
            return KeyExists(key=key, resource_version=version)
        return ResourceVersionConflict(key=key, resource_version=version, detail=str(exc))
    if isinstance(exc, ConnectionTimeout):
        return StorageTimeout(key=key)
    if isinstance(exc, OpenSearchConnectionError):
        return Unreachable(key=key, resource_version=version, detail=str(exc))
    return InternalError(str(exc), key=key)


def index_name(pk: ParsedKey) -> str:
    return f"{pk.collection}{INDEX_SEPARATOR}{pk.subcollection}"


def index_pattern(pk: ParsedKey) -> str:
    if pk.subcollection:
        return index_name(pk)
    return f"{pk.collection}{INDEX_SEPARATOR}*"


class _BulkBuffer:
    """
    Buffered bulk indexing: flushes every `flush_actions` items or every
    `flush_interval` seconds, whichever comes first, and once more on close.

    Item failures are logged and counted, never raised.
    """

    def __init__(
        self,
        client: OpenSearch,
        flush_actions: int = BULK_FLUSH_ACTIONS,
        flush_interval: float = BULK_FLUSH_INTERVAL_SECONDS,
        refresh: str = "",
    ) -> None:
        self.client = client
        self.flush_actions = flush_actions
        self.flush_interval = flush_interval
        self.refresh = refresh
        self.sent = 0
        self.failed = 0

        self._actions: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._ticker = threading.Thread(target=self._tick, name="opensearch-bulk-flush", daemon=True)

    def __enter__(self) -> "_BulkBuffer":
        self._ticker.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _take(self) -> List[Dict[str, Any]]:
        with self._lock:
            batch, self._actions = self._actions, []
        return batch

    def add(self, action: Dict[str, Any]) -> None:
        batch: List[Dict[str, Any]] = []
        with self._lock:
            self._actions.append(action)
            if len(self._actions) >= self.flush_actions:
                batch, self._actions = self._actions, []
        if batch:
            self._send(batch)

    def flush(self) -> None:
        batch = self._take()
        if batch:
            self._send(batch)

    def close(self) -> None:
        self._stop.set()
        if self._ticker.is_alive():
            self._ticker.join()
        self.flush()

    def _tick(self) -> None:
        while not self._stop.wait(self.flush_interval):
            self.flush()

    def _send(self, batch: List[Dict[str, Any]]) -> None:
        kwargs: Dict[str, Any] = {}
        if self.refresh:
            kwargs["refresh"] = self.refresh
        try:
            ok, errors = bulk(
                self.client,
                batch,
                raise_on_error=False,
                raise_on_exception=False,
                **kwargs,
            )
        except Exception as e:
            # best-effort: a failed flush loses this batch only
            logger.warning("[OpenSearch] bulk flush of %s actions failed: %s", len(batch), e)
            with self._lock:
                self.failed += len(batch)
            return

        failed = len(errors) if isinstance(errors, list) else int(errors or 0)
        with self._lock:
            self.sent += int(ok or 0)
            self.failed += failed
        if failed:
            logger.warning("[OpenSearch] bulk flush: %s of %s actions failed", failed, len(batch))


class OpenSearchStore:
    """
    Storage Interface over an OpenSearch (or Elasticsearch-compatible) cluster.

    Key "/c/s/id" addresses document `id` in index "c-s". The backend's
    `_version` is the resource version: it is injected into outputs on
    read and checked on conditional update/upsert.

    The client (and its connection pool) is owned by this instance and is
    safe to share between threads.
    """

    def __init__(self, config: Optional[SearchClientConfig] = None, client: Optional[OpenSearch] = None) -> None:
        self.config = config or SearchClientConfig()
        self.client = client if client is not None else self._build_client()

    @classmethod
    def from_env(cls) -> "OpenSearchStore":
        return cls(config=get_settings().search)

    def _build_client(self) -> OpenSearch:
        cfg = self.config
        http_auth: Any = None
        if cfg.sigv4_region:
            # Signed with boto3-resolved credentials (IRSA / instance profile / env)
            sess = boto3.Session(region_name=cfg.sigv4_region)
            creds = sess.get_credentials()
            if creds is None:
                raise RuntimeError("Failed to obtain AWS credentials for SigV4")
            frozen = creds.get_frozen_credentials()
            http_auth = AWS4Auth(
                frozen.access_key,
                frozen.secret_key,
                cfg.sigv4_region,
                "es",
                session_token=frozen.token,
            )
        elif cfg.username:
            http_auth = (cfg.username, cfg.password)

        return OpenSearch(
            hosts=list(cfg.hosts),
            http_auth=http_auth,
            verify_certs=cfg.verify_certs,
            connection_class=RequestsHttpConnection,
            pool_maxsize=cfg.pool_maxsize,
            timeout=cfg.timeout_seconds,
            max_retries=0,
            retry_on_timeout=False,
        )

    # -----------------------------------------------------------------
    # helpers
    # -----------------------------------------------------------------

    def _do(self, ctx: OpContext, key: str, fn: Any, version: int = 0, **kwargs: Any) -> Any:
        ctx.check(key)
        remaining = ctx.remaining()
        if remaining is not None:
            kwargs["request_timeout"] = remaining
        try:
            return fn(**kwargs)
        except OpenSearchException as exc:
            raise _translate_error(exc, key, version) from exc

    def _refresh(self) -> Dict[str, Any]:
        if self.config.refresh:
            return {"refresh": self.config.refresh}
        return {}

    def _guard(self, ctx: OpContext, key: str, pk: ParsedKey, version: int) -> Dict[str, Any]:
        """
        Optimistic-concurrency precondition for update/upsert.

        Checks the current `_version` and returns the seq_no/primary_term
        guard so a write racing in between still fails with a conflict.
        """
        if not version:
            return {}
        current = self._do(ctx, key, self.client.get, version=version, index=index_name(pk), id=pk.identifier, _source=False)
        current_version = current.get("_version")
        if current_version != version:
            raise ResourceVersionConflict(
                key=key,
                resource_version=version,
                detail=f"current version is {current_version}",
            )
        return {"if_seq_no": current.get("_seq_no"), "if_primary_term": current.get("_primary_term")}

    @staticmethod
    def _excludes(ctx: OpContext) -> Optional[List[str]]:
        excludes = ctx.value("excludes")
        if isinstance(excludes, (list, tuple)) and excludes:
            return [str(x) for x in excludes]
        return None

    # -----------------------------------------------------------------
    # Storage Interface
    # -----------------------------------------------------------------

    def get(self, key: str, out: Any = None, ctx: Optional[OpContext] = None) -> Any:
        pk = parse_key(key)
        ctx = ctx or OpContext.background()
        resp = self._do(ctx, key, self.client.get, index=index_name(pk), id=pk.identifier)
        if resp.get("found") is False:
            raise KeyNotFound(key=key)

        rec = decode_into(out, resp.get("_source") or {}, key=key)
        set_version(rec, resp.get("_version"))
        return rec

    def create(self, key: str, obj: Any, ttl: int = 0, ctx: Optional[OpContext] = None) -> None:
        pk = parse_key(key)
        doc = to_document(obj, key=key)
        ctx = ctx or OpContext.background()
        self._do(ctx, key, self.client.index, index=index_name(pk), id=pk.identifier, body=doc, **self._refresh())

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
        index = index_name(scope)
        ctx = ctx or OpContext.background()
        ctx.check(key)

        count = 0
        stopped = False
        with _BulkBuffer(self.client, refresh=self.config.refresh) as buf:
            for item in stream:
                if ctx.done():
                    stopped = True
                    break
                try:
                    doc = to_document(item.data, key=f"/{scope.collection}/{scope.subcollection}/{item.id}")
                except StorageError as e:
                    logger.warning("[OpenSearch] bulk_create index=%s id=%s skipped: %s", index, item.id, e)
                    continue
                action: Dict[str, Any] = {"_op_type": "index", "_index": index, "_source": doc}
                if item.id:
                    action["_id"] = item.id
                buf.add(action)
                count += 1

        logger.info(
            "[OpenSearch] bulk_create index=%s items=%s sent=%s failed=%s",
            index,
            count,
            buf.sent,
            buf.failed,
        )
        if stopped:
            # items already flushed stay written
            ctx.check(key)

    def update(
        self,
        key: str,
        resource_version: int,
        obj: Any,
        ttl: int = 0,
        ctx: Optional[OpContext] = None,
    ) -> None:
        pk = parse_key(key)
        doc = to_document(obj, key=key)
        ctx = ctx or OpContext.background()
        guard = self._guard(ctx, key, pk, resource_version)
        self._do(
            ctx,
            key,
            self.client.update,
            version=resource_version,
            index=index_name(pk),
            id=pk.identifier,
            body={"doc": doc},
            **guard,
            **self._refresh(),
        )

    def upsert(
        self,
        key: str,
        resource_version: int,
        update_obj: Any,
        insert_obj: Any = None,
        ttl: int = 0,
        ctx: Optional[OpContext] = None,
    ) -> None:
        pk = parse_key(key)
        update_doc = to_document(update_obj, key=key)
        insert_doc = update_doc if insert_obj is None else to_document(insert_obj, key=key)
        ctx = ctx or OpContext.background()
        try:
            guard = self._guard(ctx, key, pk, resource_version)
        except KeyNotFound as exc:
            # an expected version cannot match a document that does not exist
            raise ResourceVersionConflict(key=key, resource_version=resource_version, detail="document is missing") from exc
        self._do(
            ctx,
            key,
            self.client.update,
            version=resource_version,
            index=index_name(pk),
            id=pk.identifier,
            body={"doc": update_doc, "upsert": insert_doc},
            **guard,
            **self._refresh(),
        )

    def delete(self, key: str, out: Any = None, ctx: Optional[OpContext] = None) -> None:
        pk = parse_key(key)
        ctx = ctx or OpContext.background()
        self._do(ctx, key, self.client.delete, index=index_name(pk), id=pk.identifier, **self._refresh())

    def delete_by_query(self, key: str, keyword: Keyword, ctx: Optional[OpContext] = None) -> Tuple[int, int]:
        scope = parse_scope(key)
        query = translate(keyword)
        ctx = ctx or OpContext.background()
        ctx.check(key)

        kwargs: Dict[str, Any] = {
            "index": index_pattern(scope),
            "body": {"query": query or {"match_all": {}}},
            "conflicts": "proceed",
        }
        if self.config.refresh:
            kwargs["refresh"] = True
        remaining = ctx.remaining()
        if remaining is not None:
            kwargs["request_timeout"] = remaining

        try:
            resp = self.client.delete_by_query(**kwargs)
        except ConflictError as exc:
            # concurrent writers: the counts still describe what happened
            resp = exc.info if isinstance(exc.info, dict) else {}
        except OpenSearchException as exc:
            raise _translate_error(exc, key) from exc

        deleted = int(resp.get("deleted") or 0)
        conflicts = int(resp.get("version_conflicts") or 0)
        logger.info(
            "[OpenSearch] delete_by_query index=%s deleted=%s version_conflicts=%s",
            kwargs["index"],
            deleted,
            conflicts,
        )
        return deleted, conflicts

    def list(
        self,
        key: str,
        predicate: Optional[SelectionPredicate] = None,
        out: Any = dict,
        ctx: Optional[OpContext] = None,
    ) -> List[Any]:
        check_template(out)
        scope = parse_scope(key)
        index = index_pattern(scope)
        ctx = ctx or OpContext.background()

        if wants_scroll(predicate):
            hits = self._scroll_page(ctx, key, index, predicate)
        else:
            hits = self._search_page(ctx, key, index, predicate)

        return decode_rows(
            hits,
            out,
            source_of=lambda h: h.get("_source") or {},
            version_of=lambda h: h.get("_version"),
        )

    # -----------------------------------------------------------------
    # listing modes
    # -----------------------------------------------------------------

    def _body(self, ctx: OpContext, keyword: Keyword) -> Dict[str, Any]:
        body: Dict[str, Any] = {"version": True}
        query = translate(keyword)
        if query is not None:
            body["query"] = query
        excludes = self._excludes(ctx)
        if excludes:
            body["_source"] = {"excludes": excludes}
        return body

    def _search_page(
        self,
        ctx: OpContext,
        key: str,
        index: str,
        sp: Optional[SelectionPredicate],
    ) -> List[Dict[str, Any]]:
        sp = sp or SelectionPredicate()
        check_result_window(sp.from_, sp.limit)

        body = self._body(ctx, sp.keyword)
        if sp.limit > 0:
            body["size"] = sp.limit
        if sp.from_ > 0:
            body["from"] = sp.from_

        try:
            resp = self._do(ctx, key, self.client.search, index=index, body=body)
        except StorageError:
            logger.exception("[OpenSearch] search failed index=%s", index)
            raise
        return ((resp or {}).get("hits") or {}).get("hits") or []

    def _scroll_page(self, ctx: OpContext, key: str, index: str, sp: SelectionPredicate) -> List[Dict[str, Any]]:
        state = scroll_state(sp)
        if state is ScrollState.EOF:
            exhaust(sp)
            return []

        if state is ScrollState.ACTIVE:
            resp = self._do(
                ctx,
                key,
                self.client.scroll,
                body={"scroll_id": sp.scroll_id, "scroll": keep_alive(sp)},
            )
        else:
            body = self._body(ctx, sp.keyword)
            if sp.limit > 0:
                body["size"] = sp.limit
            resp = self._do(ctx, key, self.client.search, index=index, body=body, scroll=keep_alive(sp))

        hits = ((resp or {}).get("hits") or {}).get("hits") or []
        cursor = (resp or {}).get("_scroll_id") or ""
        if not hits:
            self._clear_scroll(cursor or sp.scroll_id)
            exhaust(sp)
            return []

        advance(sp, cursor)
        return hits

    def _clear_scroll(self, scroll_id: str) -> None:
        if not scroll_id:
            return
        try:
            self.client.clear_scroll(body={"scroll_id": [scroll_id]})
        except OpenSearchException as e:
            # the cursor expires on its own after keep-alive
            logger.warning("[OpenSearch] clear_scroll failed: %s", e)
