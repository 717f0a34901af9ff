"""
Exception hierarchy for oplog tailing.

Build errors are fatal to construction. Connection and decode errors are
raised from a single ``next()`` call and leave the iterator usable.
"""

from typing import Any, Optional


class OplogError(Exception):
    """Base exception for oplog errors."""
    pass


class BuildError(OplogError):
    """The oplog iterator could not be constructed."""
    pass


class OplogNotFound(BuildError):
    """The oplog namespace does not exist on the connected server."""

    def __init__(self, namespace: str):
        self.namespace = namespace
        super().__init__(
            f"oplog namespace {namespace!r} not found; is the server a replica set member?"
        )


class OplogConnectionError(OplogError):
    """The underlying cursor or connection failed during a pull."""
    pass


class DecodeError(OplogError):
    """
    A raw oplog record could not be decoded into an operation.

    The offending record has already been consumed from the cursor, so the
    next pull continues with the following record.

    Attributes:
        field: Name of the field that failed, if any
        path: Dotted location of the failure inside the record
            (e.g. ``o.applyOps.1.ns``)
    """

    def __init__(self, message: str, field: Optional[str] = None, path: Optional[str] = None):
        self.field = field
        self.path = path or field
        super().__init__(message)


class MissingField(DecodeError):
    """A field required by the record's operation type is absent or mistyped."""

    def __init__(self, field: str, reason: str = "missing", path: Optional[str] = None):
        self.reason = reason
        super().__init__(f"field {path or field!r} is {reason}", field=field, path=path)


class MissingOrInvalidTimestamp(DecodeError):
    """The ``ts`` field is absent or not a BSON timestamp."""

    def __init__(self, value: Any = None, path: Optional[str] = None):
        self.value = value
        super().__init__(
            f"field {path or 'ts'!r} must be a BSON timestamp, got {value!r}",
            field="ts",
            path=path,
        )


class MissingOrInvalidId(DecodeError):
    """The ``h`` field is absent or not a 64-bit integer."""

    def __init__(self, value: Any = None, path: Optional[str] = None):
        self.value = value
        super().__init__(
            f"field {path or 'h'!r} must be a 64-bit integer, got {value!r}",
            field="h",
            path=path,
        )


class UnrecognizedOperation(DecodeError):
    """The ``op`` discriminator is not a known operation type."""

    def __init__(self, tag: Any, path: Optional[str] = None):
        self.tag = tag
        super().__init__(f"unknown operation type found: {tag!r}", field="op", path=path)
