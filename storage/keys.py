from __future__ import annotations

from typing import NamedTuple

from storage.errors import BadRequest


class ParsedKey(NamedTuple):
    collection: str
    subcollection: str
    identifier: str


def _split(key: str) -> list:
    key = (key or "").strip()
    if not key.startswith("/"):
        key = "/" + key
    # at most 4 parts: leading "", collection, subcollection, identifier (may contain "/")
    return key.split("/", 3)


def parse_key(key: str) -> ParsedKey:
    """
    Parse a point-operation key "/collection/subcollection/id".

    All three segments are required; anything shorter is a BadRequest.
    """
    parts = _split(key)
    if len(parts) != 4 or not all(parts[1:]):
        raise BadRequest('the key must match "/collection/subcollection/id" pattern')
    return ParsedKey(parts[1], parts[2], parts[3])


def parse_scope(key: str) -> ParsedKey:
    """
    Parse a collection-scoped key ("/collection[/subcollection[/id]]").

    Missing segments come back as "" and mean "match all" at that level.
    """
    parts = _split(key)
    parts += [""] * (4 - len(parts))
    if not parts[1]:
        raise BadRequest('the key must match "/collection" pattern')
    return ParsedKey(parts[1], parts[2], parts[3])
