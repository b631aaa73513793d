from __future__ import annotations

import enum
from typing import Any, Optional, Tuple


class ErrorKind(enum.IntEnum):
    KEY_NOT_FOUND = 1
    KEY_EXISTS = 2
    RESOURCE_VERSION_CONFLICT = 3
    INVALID_OBJECT = 4
    UNREACHABLE = 5
    BAD_REQUEST = 6
    INTERNAL = 7
    TIMEOUT = 8
    CANCELLED = 9


_KIND_MESSAGES = {
    ErrorKind.KEY_NOT_FOUND: "KeyNotFound",
    ErrorKind.KEY_EXISTS: "KeyExists",
    ErrorKind.RESOURCE_VERSION_CONFLICT: "ResourceVersionConflicts",
    ErrorKind.INVALID_OBJECT: "InvalidObject",
    ErrorKind.UNREACHABLE: "ServerUnreachable",
    ErrorKind.BAD_REQUEST: "BadRequest",
    ErrorKind.INTERNAL: "internal error",
    ErrorKind.TIMEOUT: "request timeout",
    ErrorKind.CANCELLED: "request cancelled",
}

# kind -> HTTP status for any API layer built on top of the store
_KIND_STATUS = {
    ErrorKind.KEY_NOT_FOUND: 404,
    ErrorKind.KEY_EXISTS: 409,
    ErrorKind.RESOURCE_VERSION_CONFLICT: 409,
    ErrorKind.INVALID_OBJECT: 500,
    ErrorKind.UNREACHABLE: 404,
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.INTERNAL: 500,
    ErrorKind.TIMEOUT: 500,
    ErrorKind.CANCELLED: 500,
}


class StorageError(Exception):
    """
    Base of the storage error taxonomy.

    Every adapter re-raises backend failures as one of the subclasses below,
    so callers branch on `kind` (or the is_* predicates) and never on raw
    opensearch-py / botocore exception types.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, key: str = "", resource_version: int = 0, detail: str = "") -> None:
        self.key = key or ""
        self.resource_version = int(resource_version or 0)
        self.detail = detail or ""
        super().__init__(self._render())

    def _render(self) -> str:
        return (
            f"StorageError: {_KIND_MESSAGES[self.kind]}, Code: {int(self.kind)}, "
            f"Key: {self.key}, ResourceVersion: {self.resource_version}, "
            f"AdditionalErrorMsg: {self.detail}"
        )


class KeyNotFound(StorageError):
    kind = ErrorKind.KEY_NOT_FOUND


class KeyExists(StorageError):
    kind = ErrorKind.KEY_EXISTS


class ResourceVersionConflict(StorageError):
    kind = ErrorKind.RESOURCE_VERSION_CONFLICT


class InvalidObject(StorageError):
    kind = ErrorKind.INVALID_OBJECT


class Unreachable(StorageError):
    kind = ErrorKind.UNREACHABLE


class BadRequest(StorageError):
    kind = ErrorKind.BAD_REQUEST

    def __init__(self, detail: str) -> None:
        super().__init__(detail=detail)


class InternalError(StorageError):
    """Backend failure that is none of the recognized kinds; `detail` keeps the original message."""

    kind = ErrorKind.INTERNAL

    def __init__(self, detail: str, key: str = "") -> None:
        super().__init__(key=key, detail=detail)

    def _render(self) -> str:
        return self.detail


class StorageTimeout(StorageError):
    """
    The call's deadline expired.

    `partial` carries whatever the operation had already collected (only
    list-with-hydration fills it).
    """

    kind = ErrorKind.TIMEOUT

    def __init__(self, key: str = "", partial: Optional[list] = None) -> None:
        self.partial = partial
        super().__init__(key=key, detail="context deadline exceeded")

    def _render(self) -> str:
        return self.detail


class OperationCancelled(StorageError):
    kind = ErrorKind.CANCELLED

    def __init__(self, key: str = "", partial: Optional[list] = None) -> None:
        self.partial = partial
        super().__init__(key=key, detail="context canceled")

    def _render(self) -> str:
        return self.detail


def _is_kind(err: Any, kind: ErrorKind) -> bool:
    return isinstance(err, StorageError) and err.kind == kind


def is_not_found(err: Any) -> bool:
    return _is_kind(err, ErrorKind.KEY_NOT_FOUND)


def is_node_exist(err: Any) -> bool:
    return _is_kind(err, ErrorKind.KEY_EXISTS)


def is_conflict(err: Any) -> bool:
    return _is_kind(err, ErrorKind.RESOURCE_VERSION_CONFLICT)


def is_invalid_obj(err: Any) -> bool:
    return _is_kind(err, ErrorKind.INVALID_OBJECT)


def is_unreachable(err: Any) -> bool:
    return _is_kind(err, ErrorKind.UNREACHABLE)


def is_bad_request(err: Any) -> bool:
    return _is_kind(err, ErrorKind.BAD_REQUEST)


def is_internal(err: Any) -> bool:
    return _is_kind(err, ErrorKind.INTERNAL)


def is_timeout(err: Any) -> bool:
    if _is_kind(err, ErrorKind.TIMEOUT):
        return True
    # builtin TimeoutError covers socket/transport deadlines that escaped an adapter
    return isinstance(err, TimeoutError)


def is_cancelled(err: Any) -> bool:
    return _is_kind(err, ErrorKind.CANCELLED)


def error_message(err: BaseException) -> str:
    """Short kind name for taxonomy errors, str(err) for anything else."""
    if isinstance(err, StorageError):
        return _KIND_MESSAGES[err.kind]
    return str(err)


def to_http_error(err: BaseException) -> Tuple[int, str, str]:
    """
    Map any error to (status_code, message, detail).

    Unknown errors are 500 "unknown error"; the detail is always str(err).
    """
    if isinstance(err, StorageError):
        return _KIND_STATUS[err.kind], _KIND_MESSAGES[err.kind], str(err)
    if is_timeout(err):
        return 500, _KIND_MESSAGES[ErrorKind.TIMEOUT], str(err)
    return 500, "unknown error", str(err)
