from storage.context import OpContext
from storage.errors import (
    BadRequest,
    ErrorKind,
    InternalError,
    InvalidObject,
    KeyExists,
    KeyNotFound,
    OperationCancelled,
    ResourceVersionConflict,
    StorageError,
    StorageTimeout,
    Unreachable,
    error_message,
    is_bad_request,
    is_cancelled,
    is_conflict,
    is_internal,
    is_invalid_obj,
    is_node_exist,
    is_not_found,
    is_timeout,
    is_unreachable,
    to_http_error,
)
from storage.fetch import FetchOutcome, HydratedRows
from storage.interface import STREAM_CLOSED, ChannelObj, Interface, iter_channel
from storage.predicate import SelectionPredicate
from storage.query import FieldMatch, Nested, RawQuery, translate
from storage.versioning import VERSION_KEY, VersionedModel, VersionedRecord, set_version

__all__ = [
    "BadRequest",
    "ChannelObj",
    "ErrorKind",
    "FetchOutcome",
    "FieldMatch",
    "HydratedRows",
    "Interface",
    "InternalError",
    "InvalidObject",
    "KeyExists",
    "KeyNotFound",
    "Nested",
    "OpContext",
    "OperationCancelled",
    "RawQuery",
    "ResourceVersionConflict",
    "STREAM_CLOSED",
    "SelectionPredicate",
    "StorageError",
    "StorageTimeout",
    "Unreachable",
    "VERSION_KEY",
    "VersionedModel",
    "VersionedRecord",
    "error_message",
    "is_bad_request",
    "is_cancelled",
    "is_conflict",
    "is_internal",
    "is_invalid_obj",
    "is_node_exist",
    "is_not_found",
    "is_timeout",
    "is_unreachable",
    "iter_channel",
    "set_version",
    "to_http_error",
    "translate",
]
