import io
import json
import queue
import threading
import time

import pytest
from botocore.exceptions import ReadTimeoutError
from pydantic import BaseModel

from core.settings import ObjectStoreClientConfig
from providers.impl.store_s3 import S3Store
from storage import (
    BadRequest,
    ChannelObj,
    HydratedRows,
    OpContext,
    OperationCancelled,
    SelectionPredicate,
    is_not_found,
    iter_channel,
)
from storage.errors import InvalidObject, KeyNotFound, StorageTimeout, Unreachable
from storage.fetch import MAX_IN_FLIGHT
from tests.conftest import FakeS3, _client_error


class User(BaseModel):
    f1: str
    time: str = ""


def test_create_get_delete_round_trip(s3_store, fake_s3):
    post = {"f1": "v1", "time": str(int(time.time()))}
    s3_store.create("/user/eu/a", post)

    assert "user/eu/a" in fake_s3.objects
    assert fake_s3.objects["user/eu/a"]["ContentType"] == "application/json"
    assert s3_store.get("/user/eu/a") == post
    assert s3_store.get("/user/eu/a", User).time == post["time"]

    s3_store.delete("/user/eu/a")
    with pytest.raises(KeyNotFound) as ei:
        s3_store.get("/user/eu/a")
    assert is_not_found(ei.value)


def test_delete_missing_key_is_not_found(s3_store, fake_s3):
    with pytest.raises(KeyNotFound):
        s3_store.delete("/user/eu/ghost")
    assert "delete_object" not in fake_s3.calls


def test_raw_bytes_and_streams_are_stored_verbatim(s3_store, fake_s3):
    s3_store.create("/blobs/img/1", b"\x89PNG")
    s3_store.create("/blobs/img/2", io.BytesIO(b"raw"))
    assert fake_s3.objects["blobs/img/1"]["Body"] == b"\x89PNG"
    assert fake_s3.objects["blobs/img/2"]["Body"] == b"raw"
    assert fake_s3.objects["blobs/img/2"]["ContentType"] == "application/octet-stream"

    with pytest.raises(InvalidObject):
        s3_store.get("/blobs/img/1")


def test_update_and_upsert_overwrite(s3_store):
    s3_store.create("/user/eu/a", {"f1": "v1"})
    s3_store.update("/user/eu/a", 99, {"f1": "v2"})
    assert s3_store.get("/user/eu/a") == {"f1": "v2"}

    s3_store.upsert("/user/eu/b", 0, {"f1": "upd"}, {"f1": "ins"})
    assert s3_store.get("/user/eu/b") == {"f1": "upd"}


def test_delete_by_query_is_a_no_op(s3_store, fake_s3):
    s3_store.create("/user/eu/a", {"f1": "v1"})
    assert s3_store.delete_by_query("/user", {"f1": "v1"}) == (0, 0)
    assert "user/eu/a" in fake_s3.objects


def test_bulk_create_writes_each_item(s3_store, fake_s3):
    items = [ChannelObj(id=str(i), data={"n": i}) for i in range(3)] + [ChannelObj(id="bad", data={1, 2})]
    s3_store.bulk_create("/batch/eu", items)
    assert sorted(fake_s3.objects) == ["batch/eu/0", "batch/eu/1", "batch/eu/2"]


def test_list_key_only(s3_store):
    for k in ("a", "b", "c"):
        s3_store.create(f"/user/eu/{k}", {"f1": k})
    s3_store.create("/users/eu/x", {"f1": "other collection"})

    keys = s3_store.list("/user", SelectionPredicate(key_only=True))
    assert keys == ["/user/eu/a", "/user/eu/b", "/user/eu/c"]


def test_list_hydrates_into_template(s3_store):
    for k in ("a", "b"):
        s3_store.create(f"/user/eu/{k}", {"f1": k})
    rows = s3_store.list("/user/eu", None, User)
    assert [r.f1 for r in rows] == ["a", "b"]


def test_list_rejects_non_reference_template_before_network(s3_store, fake_s3):
    with pytest.raises(BadRequest):
        s3_store.list("/user/eu", None, None)
    assert fake_s3.calls == []


def test_list_scroll_uses_continuation_token(s3_store, fake_s3):
    for i in range(5):
        s3_store.create(f"/user/eu/{i}", {"f1": str(i)})

    sp = SelectionPredicate(scroll_keep_alive="1m", limit=2)
    pages = []
    while not sp.eof:
        pages.append([r["f1"] for r in s3_store.list("/user/eu", sp)])
    assert pages == [["0", "1"], ["2", "3"], ["4"]]
    assert sp.scroll_id == ""

    before = list(fake_s3.calls)
    assert s3_store.list("/user/eu", sp) == []
    assert fake_s3.calls == before


def test_hydration_is_bounded_ordered_and_tolerates_failures():
    fake = FakeS3(delay=0.001)
    store = S3Store(config=ObjectStoreClientConfig(bucket="b", prefix="tenant"), client=fake)
    try:
        for i in range(200):
            store.create(f"/docs/eu/{i:03d}", {"n": i})
        missing = {f"tenant/docs/eu/{i:03d}" for i in (5, 50, 99, 150, 199)}
        fake.fail_keys = missing

        rows = store.list("/docs/eu", SelectionPredicate())
    finally:
        store.close()

    assert len(rows) == 200
    assert 0 < fake.max_in_flight <= MAX_IN_FLIGHT
    for i, row in enumerate(rows):
        if f"tenant/docs/eu/{i:03d}" in missing:
            assert row is None
        else:
            assert row == {"n": i}


def test_bucket_prefix_is_applied_and_stripped(fake_s3):
    store = S3Store(config=ObjectStoreClientConfig(bucket="b", prefix="stores"), client=fake_s3)
    try:
        store.create("/user/eu/a", {"f1": "v1"})
        assert "stores/user/eu/a" in fake_s3.objects
        assert store.list("/user", SelectionPredicate(key_only=True)) == ["/user/eu/a"]
    finally:
        store.close()


def test_backend_failures_are_classified(s3_store, fake_s3):
    def no_bucket(**kwargs):
        raise _client_error("NoSuchBucket", "GetObject")

    fake_s3.get_object = no_bucket
    with pytest.raises(Unreachable):
        s3_store.get("/user/eu/a")


def test_expired_context_fails_without_network(s3_store, fake_s3):
    with pytest.raises(StorageTimeout):
        s3_store.create("/user/eu/a", {"f1": "v1"}, 0, OpContext.background().with_timeout(0))
    assert fake_s3.calls == []


def test_missing_bucket_config_is_rejected():
    with pytest.raises(RuntimeError):
        S3Store(config=ObjectStoreClientConfig(bucket=""), client=FakeS3())


def test_stored_body_is_json(s3_store, fake_s3):
    s3_store.create("/user/eu/a", {"f1": "v1"})
    assert json.loads(fake_s3.objects["user/eu/a"]["Body"]) == {"f1": "v1"}


class _TimingOutBody:
    def __init__(self) -> None:
        self.closed = False

    def read(self):
        raise ReadTimeoutError(endpoint_url="http://s3.local/test-bucket/user/eu/a")

    def close(self) -> None:
        self.closed = True


def test_read_timeout_while_streaming_body_is_classified(s3_store, fake_s3):
    body = _TimingOutBody()
    fake_s3.get_object = lambda **kwargs: {"Body": body}

    with pytest.raises(StorageTimeout) as ei:
        s3_store.get("/user/eu/a")
    assert isinstance(ei.value.__cause__, ReadTimeoutError)
    assert body.closed


def test_bulk_create_needs_subcollection(s3_store, fake_s3):
    with pytest.raises(BadRequest):
        s3_store.bulk_create("/batch", [ChannelObj(id=str(i), data={"n": i}) for i in range(3)])
    assert fake_s3.objects == {}


def test_list_reports_failed_slots(s3_store, fake_s3):
    for k in ("a", "b", "c"):
        s3_store.create(f"/user/eu/{k}", {"f1": k})
    fake_s3.fail_keys = {"user/eu/b"}

    rows = s3_store.list("/user/eu", SelectionPredicate())

    assert isinstance(rows, HydratedRows)
    assert rows == [{"f1": "a"}, None, {"f1": "c"}]
    assert list(rows.failures) == [1]
    assert is_not_found(rows.failures[1])


def test_bulk_create_stalled_producer_honors_cancel(s3_store, fake_s3):
    q: "queue.Queue" = queue.Queue()
    q.put(ChannelObj(id="a", data={"n": 1}))
    ctx = OpContext.background()
    threading.Timer(0.1, ctx.cancel).start()

    with pytest.raises(OperationCancelled):
        s3_store.bulk_create("/batch/eu", iter_channel(q, ctx), ctx=ctx)
    assert list(fake_s3.objects) == ["batch/eu/a"]
