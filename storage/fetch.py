from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from storage.context import OpContext

logger = logging.getLogger(__name__)

MAX_IN_FLIGHT = 50


@dataclass
class FetchOutcome:
    """
    items[i] is the hydrated object for keys[i], or None if that fetch failed.
    failures maps the failed slot index to its error.
    """

    items: List[Any]
    failures: Dict[int, BaseException] = field(default_factory=dict)


class HydratedRows(list):
    """
    List result whose None slots are explained by `failures`
    (slot index -> the error that fetch raised).
    """

    def __init__(self, items: Sequence[Any] = (), failures: Optional[Dict[int, BaseException]] = None) -> None:
        super().__init__(items)
        self.failures: Dict[int, BaseException] = dict(failures or {})


class BoundedFetcher:
    """
    Fan out per-key fetches with at most `max_in_flight` running at once.

    The gate is a counting semaphore shared by every call on this fetcher,
    so concurrent list calls on one adapter share the same ceiling.
    """

    def __init__(self, max_in_flight: int = MAX_IN_FLIGHT, poll_interval: float = 0.05) -> None:
        self.max_in_flight = max(1, int(max_in_flight))
        self.poll_interval = poll_interval
        self._slots = threading.BoundedSemaphore(self.max_in_flight)
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_in_flight,
            thread_name_prefix="bounded-fetch",
        )

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    def _acquire(self, ctx: OpContext) -> bool:
        while True:
            if ctx.done():
                return False
            if self._slots.acquire(timeout=self.poll_interval):
                return True

    def fetch_all(
        self,
        keys: Sequence[str],
        fetch_one: Callable[[str, OpContext], Any],
        ctx: Optional[OpContext] = None,
    ) -> FetchOutcome:
        """
        Fetch every key, preserving input order.

        Blocks until all dispatched fetches finish. If the context is done
        while waiting for a slot, raises the context's error with `partial`
        set to a snapshot of the results gathered so far.
        """
        ctx = ctx or OpContext.background()
        outcome = FetchOutcome(items=[None] * len(keys))
        lock = threading.Lock()

        def run(idx: int, key: str) -> None:
            try:
                value = fetch_one(key, ctx)
            except Exception as exc:
                with lock:
                    outcome.failures[idx] = exc
                logger.warning("[Fetch] key=%s failed: %s", key, exc)
            else:
                with lock:
                    outcome.items[idx] = value

        def release(_fut: concurrent.futures.Future) -> None:
            self._slots.release()

        futures: List[concurrent.futures.Future] = []
        for idx, key in enumerate(keys):
            if not self._acquire(ctx):
                with lock:
                    snapshot = list(outcome.items)
                raise ctx.err(partial=snapshot)
            fut = self._pool.submit(run, idx, key)
            fut.add_done_callback(release)
            futures.append(fut)

        concurrent.futures.wait(futures)
        if outcome.failures:
            logger.warning("[Fetch] %s of %s fetches failed", len(outcome.failures), len(keys))
        return outcome
