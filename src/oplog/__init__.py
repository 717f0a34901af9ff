"""
Typed iteration over a MongoDB replica set oplog.

Given a ``pymongo.MongoClient`` connected to a replica set, ``Oplog`` yields
every entry of ``local.oplog.rs`` as a typed ``Operation``, waiting for new
entries once it reaches the end. ``OplogBuilder`` restricts the entries with a
filter or resumes after a known timestamp.
"""

from .builder import OplogBuilder, OplogConfig
from .decoder import decode, decode_record, expand
from .errors import (
    BuildError,
    DecodeError,
    MissingField,
    MissingOrInvalidId,
    MissingOrInvalidTimestamp,
    OplogConnectionError,
    OplogError,
    OplogNotFound,
    UnrecognizedOperation,
)
from .operation import (
    ApplyOps,
    Command,
    Delete,
    Insert,
    Noop,
    Operation,
    OpType,
    Update,
)
from .source import NO_DATA, CursorHandle, MongoCursorSource
from .tailer import Oplog, TailState

__all__ = [
    "Oplog",
    "OplogBuilder",
    "OplogConfig",
    "TailState",
    "Operation",
    "OpType",
    "Noop",
    "Insert",
    "Update",
    "Delete",
    "Command",
    "ApplyOps",
    "decode",
    "decode_record",
    "expand",
    "NO_DATA",
    "CursorHandle",
    "MongoCursorSource",
    "OplogError",
    "BuildError",
    "OplogNotFound",
    "OplogConnectionError",
    "DecodeError",
    "MissingField",
    "MissingOrInvalidTimestamp",
    "MissingOrInvalidId",
    "UnrecognizedOperation",
]
