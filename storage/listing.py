from __future__ import annotations

import enum
from typing import Any, Callable, Iterable, List, Optional

from storage.errors import BadRequest
from storage.predicate import SelectionPredicate
from storage.records import check_template, new_record
from storage.versioning import set_version

# from + size ceiling; deeper offset paging must use scroll
MAX_RESULT_WINDOW = 10000
DEFAULT_SCROLL_KEEP_ALIVE = "1m"


class ScrollState(enum.Enum):
    FRESH = "fresh"
    ACTIVE = "active"
    EOF = "eof"


def wants_scroll(sp: Optional[SelectionPredicate]) -> bool:
    return sp is not None and bool(sp.scroll_keep_alive or sp.scroll_id or sp.eof)


def scroll_state(sp: SelectionPredicate) -> ScrollState:
    if sp.eof:
        return ScrollState.EOF
    if sp.scroll_id:
        return ScrollState.ACTIVE
    return ScrollState.FRESH


def keep_alive(sp: SelectionPredicate) -> str:
    return sp.scroll_keep_alive or DEFAULT_SCROLL_KEEP_ALIVE


def check_result_window(from_: int, limit: int) -> None:
    if from_ < 0 or limit < 0:
        raise BadRequest("from and size must not be negative")
    if from_ + limit > MAX_RESULT_WINDOW:
        raise BadRequest(f"from+size parameter must be less than {MAX_RESULT_WINDOW}")


def advance(sp: SelectionPredicate, cursor: str) -> None:
    """FRESH/ACTIVE -> ACTIVE: remember the backend's newest cursor."""
    sp.scroll_id = cursor or ""


def exhaust(sp: SelectionPredicate) -> None:
    """-> EOF: backend has no more data; later calls return empty without a network call."""
    sp.eof = True
    sp.scroll_id = ""


def decode_rows(
    rows: Iterable[Any],
    template: Any,
    source_of: Callable[[Any], dict],
    version_of: Optional[Callable[[Any], Optional[int]]] = None,
) -> List[Any]:
    """Decode each row into a fresh instance of the template's type and inject its version."""
    check_template(template)
    out: List[Any] = []
    for row in rows:
        rec = new_record(template, source_of(row))
        if version_of is not None:
            set_version(rec, version_of(row))
        out.append(rec)
    return out
