from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from storage.errors import BadRequest

NativeQuery = Dict[str, Any]
TermValue = Union[str, int, float]


@dataclass(frozen=True)
class RawQuery:
    """Free text in the backend's query-string syntax. Empty text means match-all."""

    text: str


@dataclass(frozen=True)
class Nested:
    """A backend-native query fragment handed over as-is."""

    clause: Mapping[str, Any]


@dataclass(frozen=True)
class FieldMatch:
    """
    Conjunction of per-field clauses.

    A scalar value is an exact term, a list is "value is one of", and a
    Nested value (or a plain mapping) is passed through untouched.
    """

    fields: Mapping[str, Any] = field(default_factory=dict)


Keyword = Union[RawQuery, FieldMatch, Nested, str, Mapping[str, Any], None]


def _field_clause(name: str, value: Any) -> NativeQuery:
    if isinstance(value, Nested):
        return dict(value.clause)
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return {"terms": {name: list(value)}}
    if isinstance(value, (str, int, float)):
        return {"term": {name: value}}
    raise BadRequest(f"unknown keyword value for field {name!r}: {type(value).__name__}")


def _field_match(fields: Mapping[str, Any]) -> Optional[NativeQuery]:
    if not fields:
        return None
    must: List[NativeQuery] = [_field_clause(str(k), v) for k, v in fields.items()]
    return {"bool": {"must": must}}


def translate(keyword: Keyword) -> Optional[NativeQuery]:
    """
    Translate a loosely typed keyword into an OpenSearch query body.

    Returns None when the keyword places no restriction (match-all).
    """
    if keyword is None:
        return None
    if isinstance(keyword, RawQuery):
        keyword = keyword.text
    if isinstance(keyword, str):
        if not keyword:
            return None
        return {"query_string": {"query": keyword}}
    if isinstance(keyword, Nested):
        return dict(keyword.clause)
    if isinstance(keyword, FieldMatch):
        return _field_match(keyword.fields)
    if isinstance(keyword, Mapping):
        return _field_match(keyword)
    raise BadRequest(f"unknown keyword argument: {type(keyword).__name__}")
