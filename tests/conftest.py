import fnmatch
import io
import itertools
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError
from opensearchpy.exceptions import ConflictError, NotFoundError

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


# ---------------------------------------------------------------------
# OpenSearch fake
# ---------------------------------------------------------------------

def _matches(query: Optional[Dict[str, Any]], src: Dict[str, Any]) -> bool:
    if not query or "match_all" in query:
        return True
    if "bool" in query:
        return all(_matches(q, src) for q in query["bool"].get("must", []))
    if "term" in query:
        ((field, value),) = query["term"].items()
        return src.get(field) == value
    if "terms" in query:
        ((field, values),) = query["terms"].items()
        return src.get(field) in values
    if "query_string" in query:
        text = query["query_string"]["query"]
        field, _, value = text.partition(":")
        return str(src.get(field)) == value
    raise AssertionError(f"fake cannot evaluate {query}")


class FakeOpenSearch:
    """In-memory stand-in for opensearchpy.OpenSearch (only what the store calls)."""

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[str] = []
        self.scrolls: Dict[str, Dict[str, Any]] = {}
        self.cleared: List[str] = []
        self._seq = itertools.count(1)
        self._scroll_ids = itertools.count(1)
        self._lock = threading.Lock()

    def _indices(self, pattern: str) -> List[str]:
        return [name for name in self.docs if fnmatch.fnmatchcase(name, pattern)]

    def _missing(self, index: str, id: str) -> NotFoundError:
        return NotFoundError(404, "not_found", {"_index": index, "_id": id, "found": False})

    def index(self, index: str, body: Dict[str, Any], id: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("index")
        with self._lock:
            if id is None:
                id = f"auto-{next(self._seq)}"
            docs = self.docs.setdefault(index, {})
            prev = docs.get(id)
            version = (prev["_version"] + 1) if prev else 1
            docs[id] = {"_source": dict(body), "_version": version, "_seq_no": next(self._seq), "_primary_term": 1}
        return {"_index": index, "_id": id, "_version": version, "result": "created"}

    def get(self, index: str, id: str, _source: bool = True, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("get")
        doc = self.docs.get(index, {}).get(id)
        if doc is None:
            raise self._missing(index, id)
        resp = {"_index": index, "_id": id, "found": True, **{k: v for k, v in doc.items() if k != "_source"}}
        if _source:
            resp["_source"] = dict(doc["_source"])
        return resp

    def update(self, index: str, id: str, body: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("update")
        with self._lock:
            docs = self.docs.setdefault(index, {})
            doc = docs.get(id)
            if doc is None:
                if "upsert" not in body:
                    raise self._missing(index, id)
                src = dict(body["upsert"])
                version = 1
            else:
                if "if_seq_no" in kwargs and (
                    kwargs["if_seq_no"] != doc["_seq_no"] or kwargs.get("if_primary_term") != doc["_primary_term"]
                ):
                    raise ConflictError(409, "version_conflict_engine_exception", {"status": 409})
                src = dict(doc["_source"])
                src.update(body["doc"])
                version = doc["_version"] + 1
            docs[id] = {"_source": src, "_version": version, "_seq_no": next(self._seq), "_primary_term": 1}
        return {"_id": id, "_version": version, "result": "updated"}

    def delete(self, index: str, id: str, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("delete")
        if id not in self.docs.get(index, {}):
            raise self._missing(index, id)
        del self.docs[index][id]
        return {"result": "deleted"}

    def _hits(self, index: str, query: Optional[Dict[str, Any]], excludes: List[str]) -> List[Dict[str, Any]]:
        hits = []
        for name in self._indices(index):
            for id, doc in self.docs[name].items():
                if _matches(query, doc["_source"]):
                    src = {k: v for k, v in doc["_source"].items() if k not in excludes}
                    hits.append({"_index": name, "_id": id, "_version": doc["_version"], "_source": src})
        return hits

    def search(self, index: str, body: Dict[str, Any], scroll: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("search")
        excludes = (body.get("_source") or {}).get("excludes", [])
        hits = self._hits(index, body.get("query"), excludes)
        if not body.get("version"):
            for h in hits:
                h.pop("_version", None)
        size = body.get("size", 10)
        start = body.get("from", 0)
        if scroll:
            scroll_id = f"scroll-{next(self._scroll_ids)}"
            self.scrolls[scroll_id] = {"hits": hits[size:], "size": size}
            return {"_scroll_id": scroll_id, "hits": {"hits": hits[:size]}}
        return {"hits": {"total": {"value": len(hits)}, "hits": hits[start:start + size]}}

    def scroll(self, body: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("scroll")
        state = self.scrolls.get(body["scroll_id"])
        if state is None:
            raise NotFoundError(404, "search_context_missing_exception", {})
        page, state["hits"] = state["hits"][: state["size"]], state["hits"][state["size"]:]
        return {"_scroll_id": body["scroll_id"], "hits": {"hits": page}}

    def clear_scroll(self, body: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("clear_scroll")
        for scroll_id in body["scroll_id"]:
            self.scrolls.pop(scroll_id, None)
            self.cleared.append(scroll_id)
        return {"succeeded": True}

    def delete_by_query(self, index: str, body: Dict[str, Any], conflicts: str = "abort", **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("delete_by_query")
        deleted = 0
        for name in self._indices(index):
            for id in [i for i, d in self.docs[name].items() if _matches(body.get("query"), d["_source"])]:
                del self.docs[name][id]
                deleted += 1
        return {"deleted": deleted, "version_conflicts": 0, "failures": []}


# ---------------------------------------------------------------------
# S3 fake
# ---------------------------------------------------------------------

def _client_error(code: str, op: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class FakeS3:
    """In-memory stand-in for a boto3 S3 client; tracks concurrent get_object calls."""

    def __init__(self, delay: float = 0.0) -> None:
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.fail_keys: set = set()
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def put_object(self, Bucket: str, Key: str, Body: Any, ContentType: str = "", **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("put_object")
        if hasattr(Body, "read"):
            Body = Body.read()
        self.objects[Key] = {"Body": bytes(Body), "ContentType": ContentType}
        return {"ETag": '"etag"'}

    def get_object(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        with self._lock:
            self.calls.append("get_object")
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                # later keys finish first when listed in order
                time.sleep(self.delay * (1 + (hash(Key) % 5)))
            if Key in self.fail_keys or Key not in self.objects:
                raise _client_error("NoSuchKey", "GetObject")
            return {"Body": io.BytesIO(self.objects[Key]["Body"])}
        finally:
            with self._lock:
                self.in_flight -= 1

    def head_object(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("head_object")
        if Key not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[Key]["Body"])}

    def delete_object(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append("delete_object")
        self.objects.pop(Key, None)
        return {}

    def list_objects_v2(
        self,
        Bucket: str,
        Prefix: str = "",
        MaxKeys: int = 1000,
        ContinuationToken: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        self.calls.append("list_objects_v2")
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        start = int(ContinuationToken or 0)
        page = keys[start:start + MaxKeys]
        resp: Dict[str, Any] = {
            "Contents": [{"Key": k, "Size": len(self.objects[k]["Body"])} for k in page],
            "IsTruncated": start + MaxKeys < len(keys),
        }
        if resp["IsTruncated"]:
            resp["NextContinuationToken"] = str(start + MaxKeys)
        return resp


@pytest.fixture
def fake_opensearch():
    return FakeOpenSearch()


@pytest.fixture
def search_store(fake_opensearch):
    from providers.impl.store_opensearch import OpenSearchStore

    return OpenSearchStore(client=fake_opensearch)


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def s3_store(fake_s3):
    from core.settings import ObjectStoreClientConfig
    from providers.impl.store_s3 import S3Store

    store = S3Store(config=ObjectStoreClientConfig(bucket="test-bucket"), client=fake_s3)
    yield store
    store.close()
