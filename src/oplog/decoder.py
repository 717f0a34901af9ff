"""
Decoding of raw oplog records into typed operations.

Raw records look like::

    {
        "ts": Timestamp(1479561394, 1),
        "h": -1742072865587022793,
        "v": 2,
        "op": "i",
        "ns": "foo.bar",
        "o": {"_id": 1, "foo": "bar"},
    }

``decode`` returns the leaf operations of a record: one for a plain record,
zero or more for an ``applyOps`` batch. ``decode_record`` returns exactly one
operation and keeps batches wrapped in ``ApplyOps``.

Sub-records of a batch use their own ``ts``/``h`` when present and inherit the
batch record's values otherwise.
"""

from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import Timestamp

from .errors import (
    MissingField,
    MissingOrInvalidId,
    MissingOrInvalidTimestamp,
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

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_OP_TYPES = {op_type.value: op_type for op_type in OpType}

_MISSING = object()


def _field(raw: Mapping, name: str, expected: type, prefix: str) -> Any:
    value = raw.get(name, _MISSING)
    if value is _MISSING:
        raise MissingField(name, path=prefix + name)
    if not isinstance(value, expected):
        raise MissingField(name, reason="unexpected type", path=prefix + name)
    return value


def _document(raw: Mapping, name: str, prefix: str) -> Dict[str, Any]:
    return _field(raw, name, Mapping, prefix)


def _namespace(raw: Mapping, prefix: str) -> str:
    return _field(raw, "ns", str, prefix)


def _timestamp(raw: Mapping, inherited: Optional[Timestamp], prefix: str) -> Timestamp:
    value = raw.get("ts", inherited)
    if not isinstance(value, Timestamp):
        raise MissingOrInvalidTimestamp(value, path=prefix + "ts")
    return value


def _id(raw: Mapping, inherited: Optional[int], prefix: str) -> int:
    value = raw.get("h", inherited)
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise MissingOrInvalidId(value, path=prefix + "h")
    if not INT64_MIN <= value <= INT64_MAX:
        raise MissingOrInvalidId(value, path=prefix + "h")
    return int(value)


def _op_type(raw: Mapping, prefix: str) -> OpType:
    if "op" not in raw:
        raise MissingField("op", path=prefix + "op")
    tag = raw["op"]
    if not isinstance(tag, str) or tag not in _OP_TYPES:
        raise UnrecognizedOperation(tag, path=prefix + "op")
    return _OP_TYPES[tag]


def _is_apply_ops(raw: Mapping) -> bool:
    command = raw.get("o")
    return isinstance(command, Mapping) and isinstance(command.get("applyOps"), list)


class _PendingBatch:
    """An ``applyOps`` record whose constituents are still being decoded."""

    def __init__(self, timestamp: Timestamp, op_id: int, namespace: str, entries: list, prefix: str):
        self.timestamp = timestamp
        self.id = op_id
        self.namespace = namespace
        self.entries = entries
        self.prefix = prefix
        self.decoded: List[Operation] = []

    def next_entry(self) -> Tuple[Any, Tuple[Timestamp, int], str]:
        index = len(self.decoded)
        return self.entries[index], (self.timestamp, self.id), f"{self.prefix}o.applyOps.{index}."

    @property
    def complete(self) -> bool:
        return len(self.decoded) == len(self.entries)

    def finish(self) -> ApplyOps:
        return ApplyOps(
            timestamp=self.timestamp,
            id=self.id,
            namespace=self.namespace,
            operations=tuple(self.decoded),
        )


def _decode_one(
    raw: Mapping,
    parent: Optional[Tuple[Timestamp, int]],
    prefix: str,
) -> Union[Operation, _PendingBatch]:
    if not isinstance(raw, Mapping):
        raise MissingField(prefix.rstrip(".") or "record", reason="not a document")

    op_type = _op_type(raw, prefix)
    inherited_ts, inherited_id = parent if parent is not None else (None, None)
    timestamp = _timestamp(raw, inherited_ts, prefix)
    op_id = _id(raw, inherited_id, prefix)

    if op_type is OpType.NOOP:
        return Noop(timestamp=timestamp, id=op_id, message=_document(raw, "o", prefix))

    namespace = _namespace(raw, prefix)

    if op_type is OpType.INSERT:
        return Insert(
            timestamp=timestamp,
            id=op_id,
            namespace=namespace,
            document=_document(raw, "o", prefix),
        )

    if op_type is OpType.UPDATE:
        return Update(
            timestamp=timestamp,
            id=op_id,
            namespace=namespace,
            query=_document(raw, "o2", prefix),
            update=_document(raw, "o", prefix),
        )

    if op_type is OpType.DELETE:
        return Delete(
            timestamp=timestamp,
            id=op_id,
            namespace=namespace,
            query=_document(raw, "o", prefix),
        )

    if _is_apply_ops(raw):
        return _PendingBatch(timestamp, op_id, namespace, raw["o"]["applyOps"], prefix)

    return Command(
        timestamp=timestamp,
        id=op_id,
        namespace=namespace,
        command=_document(raw, "o", prefix),
    )


def decode_record(raw: Mapping, parent: Optional[Tuple[Timestamp, int]] = None) -> Operation:
    """
    Decode one raw oplog record into exactly one operation.

    Nested batches are decoded with a work stack, so nesting depth is not
    bounded by the interpreter's recursion limit.

    Args:
        raw: Document read from the oplog collection
        parent: ``(timestamp, id)`` of the enclosing ``applyOps`` record, used
            when a sub-record omits its own ``ts``/``h``

    Returns:
        The decoded operation. ``applyOps`` records come back as ``ApplyOps``
        with their constituents already decoded.

    Raises:
        MissingField: A field required by the operation type is absent
        MissingOrInvalidTimestamp: ``ts`` is absent or not a BSON timestamp
        MissingOrInvalidId: ``h`` is absent or not a 64-bit integer
        UnrecognizedOperation: ``op`` is not a known discriminator
    """
    decoded = _decode_one(raw, parent, "")
    if not isinstance(decoded, _PendingBatch):
        return decoded

    stack = [decoded]
    while True:
        batch = stack[-1]
        if not batch.complete:
            entry = _decode_one(*batch.next_entry())
            if isinstance(entry, _PendingBatch):
                stack.append(entry)
            else:
                batch.decoded.append(entry)
            continue

        stack.pop()
        operation = batch.finish()
        if not stack:
            return operation
        stack[-1].decoded.append(operation)


def expand(operation: Operation) -> List[Operation]:
    """Flatten ``ApplyOps`` into its leaf operations, preserving array order."""
    leaves: List[Operation] = []
    stack = [operation]
    while stack:
        current = stack.pop()
        if isinstance(current, ApplyOps):
            stack.extend(reversed(current.operations))
        else:
            leaves.append(current)
    return leaves


def decode(raw: Mapping) -> List[Operation]:
    """
    Decode a raw oplog record into the operations a consumer should see.

    Plain records produce a single operation. ``applyOps`` records produce
    their constituents in order (possibly none) and never an ``ApplyOps``.

    Raises:
        DecodeError: If the record, or any record inside a batch, is malformed
    """
    return expand(decode_record(raw))
