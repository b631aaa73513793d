from __future__ import annotations

import queue
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from storage.context import OpContext
from storage.predicate import SelectionPredicate
from storage.query import Keyword


@dataclass
class ChannelObj:
    """One BulkCreate item: stored under the shared key's collection with its own id."""

    id: str
    data: Any


# producer puts this on the queue to close the stream
STREAM_CLOSED = object()


def iter_channel(
    q: "queue.Queue[Any]",
    ctx: Optional[OpContext] = None,
    poll_interval: float = 0.05,
) -> Iterator[ChannelObj]:
    """
    Drain a producer-fed queue until STREAM_CLOSED is received.

    With a ctx, waiting on a stalled producer is bounded by it: the ctx's
    error (StorageTimeout / OperationCancelled) is raised once it is done.
    """
    while True:
        if ctx is None:
            item = q.get()
        else:
            try:
                item = q.get(timeout=poll_interval)
            except queue.Empty:
                ctx.check()
                continue
        try:
            if item is STREAM_CLOSED:
                return
            yield item
        finally:
            q.task_done()


@runtime_checkable
class Interface(Protocol):
    """
    Backend-agnostic key/document storage.

    Keys follow "/collection/subcollection/id". Point operations need all
    three segments; list and delete_by_query need at least the collection.
    Every operation raises storage.errors taxonomy errors only.
    """

    def get(self, key: str, out: Any = None, ctx: Optional[OpContext] = None) -> Any: ...

    def create(self, key: str, obj: Any, ttl: int = 0, ctx: Optional[OpContext] = None) -> None: ...

    def bulk_create(
        self,
        key: str,
        stream: Iterable[ChannelObj],
        ttl: int = 0,
        ctx: Optional[OpContext] = None,
    ) -> None: ...

    def update(
        self,
        key: str,
        resource_version: int,
        obj: Any,
        ttl: int = 0,
        ctx: Optional[OpContext] = None,
    ) -> None: ...

    def upsert(
        self,
        key: str,
        resource_version: int,
        update_obj: Any,
        insert_obj: Any = None,
        ttl: int = 0,
        ctx: Optional[OpContext] = None,
    ) -> None: ...

    def delete(self, key: str, out: Any = None, ctx: Optional[OpContext] = None) -> None: ...

    def delete_by_query(
        self,
        key: str,
        keyword: Keyword,
        ctx: Optional[OpContext] = None,
    ) -> Tuple[int, int]: ...

    def list(
        self,
        key: str,
        predicate: Optional[SelectionPredicate] = None,
        out: Any = dict,
        ctx: Optional[OpContext] = None,
    ) -> List[Any]: ...
