from __future__ import annotations

from dataclasses import dataclass

from storage.query import Keyword


@dataclass
class SelectionPredicate:
    """
    Request descriptor for List.

    In scroll mode the instance itself is the cursor: adapters overwrite
    `scroll_id` after every page and set `eof` once the backend runs dry.
    One scroll sequence must be driven by one caller at a time.

    key_only is honored by the object-storage adapter (return keys, skip bodies).
    """

    keyword: Keyword = None
    limit: int = 0
    from_: int = 0

    scroll_keep_alive: str = ""
    scroll_id: str = ""
    eof: bool = False

    key_only: bool = False
