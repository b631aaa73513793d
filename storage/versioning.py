from __future__ import annotations

from typing import Any, MutableMapping, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

# reserved key used when the caller's output is a plain mapping
VERSION_KEY = "_version"


@runtime_checkable
class VersionedRecord(Protocol):
    """
    Capability implemented by records that want the backend's resource
    version reflected into them after a read.
    """

    def set_resource_version(self, version: int) -> None: ...


class VersionedModel(BaseModel):
    """
    Pydantic base for structured records carrying a resource version.

    The version is backend metadata, so it is excluded from the serialized
    document. Subclasses may redeclare the field as Optional[str]; the
    version is then written as its decimal string.
    """

    resource_version: Optional[int] = Field(default=None, exclude=True)

    def set_resource_version(self, version: int) -> None:
        field = type(self).model_fields.get("resource_version")
        annotation = getattr(field, "annotation", None)
        if annotation in (str, Optional[str]):
            self.resource_version = str(version)
        else:
            self.resource_version = int(version)


def set_version(out: Any, version: Optional[int]) -> None:
    """
    Reflect `version` into `out`.

    Best-effort: a mapping gets VERSION_KEY, a VersionedRecord gets
    set_resource_version(), anything else is left untouched.
    """
    if out is None or version is None:
        return
    if isinstance(out, MutableMapping):
        out[VERSION_KEY] = int(version)
        return
    if isinstance(out, VersionedRecord):
        out.set_resource_version(int(version))
