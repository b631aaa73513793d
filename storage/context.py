from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional

from storage.errors import OperationCancelled, StorageError, StorageTimeout


class OpContext:
    """
    Per-call deadline / cancellation signal plus side-channel values.

    Derived contexts (with_timeout, with_value) share the parent's cancel
    event, so cancelling a parent cancels everything derived from it.
    """

    def __init__(
        self,
        deadline: Optional[float] = None,
        values: Optional[Dict[str, Any]] = None,
        _cancel: Optional[threading.Event] = None,
    ) -> None:
        self.deadline = deadline  # time.monotonic() based
        self.values: Dict[str, Any] = dict(values or {})
        self._cancel = _cancel or threading.Event()

    @classmethod
    def background(cls) -> "OpContext":
        return cls()

    def with_timeout(self, seconds: float) -> "OpContext":
        deadline = time.monotonic() + max(0.0, float(seconds))
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        return OpContext(deadline=deadline, values=self.values, _cancel=self._cancel)

    def with_value(self, name: str, value: Any) -> "OpContext":
        values = dict(self.values)
        values[name] = value
        return OpContext(deadline=self.deadline, values=values, _cancel=self._cancel)

    def value(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def cancel(self) -> None:
        self._cancel.set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def done(self) -> bool:
        return self._cancel.is_set() or self.expired()

    def err(self, key: str = "", partial: Optional[list] = None) -> Optional[StorageError]:
        if self._cancel.is_set():
            return OperationCancelled(key=key, partial=partial)
        if self.expired():
            return StorageTimeout(key=key, partial=partial)
        return None

    def check(self, key: str = "") -> None:
        err = self.err(key)
        if err is not None:
            raise err

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds` (bounded by the deadline); True if the context is done."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._cancel.wait(max(0.0, seconds))
        return self.done()
