"""
Typed oplog operations.

Every record in ``local.oplog.rs`` becomes one of the variants below. The set
is closed: code consuming an ``Operation`` can match on the concrete class (or
on ``op_type``) and know it has covered every case.

Example:
    >>> for op in oplog:
    ...     if isinstance(op, Insert):
    ...         handle_insert(op.namespace, op.document)
    ...     elif isinstance(op, Delete):
    ...         handle_delete(op.namespace, op.query)
"""

from dataclasses import dataclass
from datetime import datetime as py_datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

from bson import Timestamp
from bson.json_util import dumps


class OpType(str, Enum):
    """Values of the ``op`` discriminator found in raw oplog records."""
    NOOP = "n"
    INSERT = "i"
    UPDATE = "u"
    DELETE = "d"
    COMMAND = "c"


def timestamp_to_datetime(timestamp: Timestamp) -> py_datetime:
    """Convert a BSON timestamp to an aware UTC datetime.

    The ordinal part only orders entries written within the same second, so
    it is dropped.
    """
    return timestamp.as_datetime()


def format_timestamp(timestamp: Timestamp) -> str:
    """Render a timestamp as ``SECONDS:ORDINAL``."""
    return f"{timestamp.time}:{timestamp.inc}"


def parse_timestamp(value: str) -> Timestamp:
    """Parse ``SECONDS:ORDINAL`` (or bare ``SECONDS``) into a BSON timestamp.

    Raises:
        ValueError: If the value is not in the expected form
    """
    seconds, _, ordinal = value.strip().partition(":")
    try:
        return Timestamp(int(seconds), int(ordinal or 0))
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid timestamp {value!r}, expected SECONDS:ORDINAL") from e


@dataclass(frozen=True)
class _Operation:
    timestamp: Timestamp
    id: int

    op_type: ClassVar[OpType]

    @property
    def datetime(self) -> py_datetime:
        """Time of the operation in UTC."""
        return timestamp_to_datetime(self.timestamp)

    @property
    def database(self) -> Optional[str]:
        if not self.namespace:
            return None
        return self.namespace.split(".", 1)[0]

    @property
    def collection(self) -> Optional[str]:
        if not self.namespace or "." not in self.namespace:
            return None
        return self.namespace.split(".", 1)[1]


@dataclass(frozen=True)
class Noop(_Operation):
    """A no-op written periodically by MongoDB or when initiating a replica set."""
    message: Dict[str, Any]

    op_type: ClassVar[OpType] = OpType.NOOP
    namespace: ClassVar[Optional[str]] = None

    @property
    def msg(self) -> Optional[str]:
        """The ``msg`` text carried by most no-ops, if any."""
        return self.message.get("msg")

    def __str__(self) -> str:
        text = self.msg if self.msg is not None else dumps(self.message)
        return f"No-op #{self.id} at {self.datetime}: {text}"


@dataclass(frozen=True)
class Insert(_Operation):
    """An insert of ``document`` into ``namespace``."""
    namespace: str
    document: Dict[str, Any]

    op_type: ClassVar[OpType] = OpType.INSERT

    def __str__(self) -> str:
        return f"Insert #{self.id} into {self.namespace} at {self.datetime}: {dumps(self.document)}"


@dataclass(frozen=True)
class Update(_Operation):
    """An update of documents matching ``query`` with ``update``."""
    namespace: str
    query: Dict[str, Any]
    update: Dict[str, Any]

    op_type: ClassVar[OpType] = OpType.UPDATE

    def __str__(self) -> str:
        return (
            f"Update #{self.id} {self.namespace} with {dumps(self.query)} "
            f"at {self.datetime}: {dumps(self.update)}"
        )


@dataclass(frozen=True)
class Delete(_Operation):
    """A delete of documents matching ``query``."""
    namespace: str
    query: Dict[str, Any]

    op_type: ClassVar[OpType] = OpType.DELETE

    def __str__(self) -> str:
        return f"Delete #{self.id} from {self.namespace} at {self.datetime}: {dumps(self.query)}"


@dataclass(frozen=True)
class Command(_Operation):
    """A database command such as ``create`` or ``drop``."""
    namespace: str
    command: Dict[str, Any]

    op_type: ClassVar[OpType] = OpType.COMMAND

    def __str__(self) -> str:
        return f"Command #{self.id} {self.namespace} at {self.datetime}: {dumps(self.command)}"


@dataclass(frozen=True)
class ApplyOps(_Operation):
    """
    A batch of operations applied atomically.

    ``operations`` holds the decoded constituents in array order. The tailing
    iterator never yields this type; it always yields the constituents.
    """
    namespace: str
    operations: Tuple["Operation", ...]

    op_type: ClassVar[OpType] = OpType.COMMAND

    def __str__(self) -> str:
        return (
            f"ApplyOps #{self.id} {self.namespace} at {self.datetime}: "
            f"{len(self.operations)} operation(s)"
        )


Operation = Union[Noop, Insert, Update, Delete, Command, ApplyOps]

OPERATION_TYPES = (Noop, Insert, Update, Delete, Command, ApplyOps)
