from __future__ import annotations

import dataclasses
import json
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ValidationError

from storage.errors import BadRequest, InvalidObject
from storage.versioning import VERSION_KEY


def to_document(obj: Any, key: str = "") -> Dict[str, Any]:
    """
    Convert a caller value into a JSON-compatible document (a dict).

    Accepts pydantic models, dataclass instances and mappings.
    """
    if isinstance(obj, BaseModel):
        doc = obj.model_dump(mode="json")
    elif dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        doc = dataclasses.asdict(obj)
    elif isinstance(obj, Mapping):
        doc = {k: v for k, v in obj.items() if k != VERSION_KEY}
    else:
        raise InvalidObject(key=key, detail=f"cannot store {type(obj).__name__} as a document")

    try:
        # round-trip through json so non-serializable values fail here, before any network call
        return json.loads(json.dumps(doc))
    except (TypeError, ValueError) as exc:
        raise InvalidObject(key=key, detail=str(exc)) from exc


def check_template(template: Any) -> None:
    """List templates must be a type or a dict prototype."""
    if isinstance(template, type) or isinstance(template, dict):
        return
    raise BadRequest(f"non-reference template {type(template).__name__}")


def new_record(template: Any, source: Dict[str, Any], key: str = "") -> Any:
    """
    Build a fresh instance of the caller's target type from a document.

    `template` is a type (pydantic model, dataclass, dict or dict subclass,
    or any class accepting the fields as keyword arguments) or a dict
    instance, whose type is then used.
    """
    check_template(template)
    cls = template if isinstance(template, type) else type(template)
    source = source or {}
    try:
        if issubclass(cls, BaseModel):
            return cls.model_validate(source)
        if issubclass(cls, dict):
            return cls(source)
        return cls(**source)
    except (ValidationError, TypeError, ValueError) as exc:
        raise InvalidObject(key=key, detail=f"cannot decode into {cls.__name__}: {exc}") from exc


def decode_into(out: Optional[Any], source: Dict[str, Any], key: str = "") -> Any:
    """
    Decode a point-read document for Get.

    None -> plain dict, dict instance -> filled in place, type -> new instance.
    """
    if out is None:
        return dict(source or {})
    if isinstance(out, dict):
        out.update(source or {})
        return out
    if isinstance(out, type):
        return new_record(out, source, key=key)
    raise BadRequest(f"non-reference output {type(out).__name__}")
