"""
Tailing iterator over a replica set oplog.

``Oplog`` turns a tailable cursor into an endless sequence of ``Operation``
values. Pulls that find nothing new are retried, so a healthy ``Oplog`` never
stops on its own.

Errors are raised from the ``next()`` call that hit them:

- ``DecodeError``: the record was malformed. It has already been consumed,
  so calling ``next()`` again continues with the following record. This is
  the only case where a record is skipped.
- ``OplogConnectionError``: the cursor failed. There is no internal
  reconnect; build a new ``Oplog`` with ``resume_builder()``.

The resume position is the ``ts`` of the last oplog entry whose operations
were all yielded. Constituents of an ``applyOps`` batch may carry their own
``ts``, but the server orders and filters on the outer entry's ``ts``, so a
batch only moves the resume position once it is fully drained.

Because errors propagate, a plain ``for`` loop stops at the first one. Call
``next()`` directly to log and skip bad records::

    while True:
        try:
            op = next(oplog)
        except DecodeError as e:
            logger.warning(f"skipping malformed oplog entry: {e}")
            continue
        handle(op)
"""

import logging
from collections import deque
from enum import Enum
from typing import Deque, Optional

from bson import Timestamp

from . import metrics
from .decoder import decode
from .errors import DecodeError
from .operation import Operation
from .source import NO_DATA

logger = logging.getLogger(__name__)


class TailState(str, Enum):
    """Position of the iterator in its pull cycle."""
    IDLE = "idle"  # Built, nothing pulled yet
    DRAINING = "draining"  # Yielding the rest of an applyOps batch
    AWAITING = "awaiting"  # Buffer empty, next call pulls from the cursor
    CLOSED = "closed"


class Oplog:
    """
    Iterator over the operations of a replica set oplog.

    Thread Safety: NOT thread-safe. Use one instance per consumer.

    Resource Usage:
    - One server-side tailable cursor, released by ``close()``
    - Memory: at most the constituents of one applyOps batch

    Example:
        >>> with Oplog.new(client) as oplog:
        ...     for operation in oplog:
        ...         print(operation)
    """

    def __init__(self, cursor, config=None):
        """
        Args:
            cursor: Handle with ``pull_next()`` and ``close()``, see
                ``source.CursorHandle``
            config: The ``OplogConfig`` the cursor was opened with
        """
        self._cursor = cursor
        self.config = config
        self._buffer: Deque[Operation] = deque()
        self.state = TailState.IDLE
        self.last_timestamp: Optional[Timestamp] = None
        self.resume_timestamp: Optional[Timestamp] = None
        self.operations_yielded: int = 0
        self._entry_timestamp: Optional[Timestamp] = None  # ts of the entry being yielded

    @classmethod
    def new(cls, client) -> "Oplog":
        """Return an ``Oplog`` over ``local.oplog.rs`` with the default options."""
        from .builder import OplogBuilder

        return OplogBuilder(client).build()

    def __iter__(self) -> "Oplog":
        return self

    def __next__(self) -> Operation:
        if self.state is TailState.CLOSED:
            raise StopIteration

        if self._buffer:
            return self._emit(self._buffer.popleft())

        self.state = TailState.AWAITING
        while True:
            raw = self._cursor.pull_next()
            if raw is NO_DATA:
                metrics.oplog_empty_polls_total.inc()
                continue

            try:
                operations = decode(raw)
            except DecodeError as e:
                metrics.oplog_decode_errors_total.labels(error_type=type(e).__name__).inc()
                logger.warning(
                    f"Skipping malformed oplog entry: {e}",
                    extra={"path": e.path, "ts": str(raw.get("ts")) if hasattr(raw, "get") else None}
                )
                raise

            # decode() rejects entries without a top-level Timestamp
            self._entry_timestamp = raw["ts"]
            if not operations:
                logger.debug("Empty applyOps batch, pulling next entry")
                self.resume_timestamp = self._entry_timestamp
                continue

            self._buffer.extend(operations[1:])
            return self._emit(operations[0])

    def _emit(self, operation: Operation) -> Operation:
        self.state = TailState.DRAINING if self._buffer else TailState.AWAITING
        self.last_timestamp = operation.timestamp
        if not self._buffer:
            self.resume_timestamp = self._entry_timestamp
        self.operations_yielded += 1
        metrics.oplog_operations_total.labels(op_type=type(operation).__name__.lower()).inc()
        return operation

    def next(self) -> Operation:
        return self.__next__()

    def resume_builder(self, builder):
        """
        Return ``builder`` positioned after the last fully yielded oplog entry.

        A partly drained applyOps batch is replayed in full by the new
        cursor. Before anything was yielded, the builder resumes from the
        position this oplog was opened at, so a ``start_at_latest`` builder
        does not jump ahead to whatever is latest at rebuild time.
        """
        if self.resume_timestamp is not None:
            return builder.resume_after(self.resume_timestamp)
        if self.config is not None:
            return builder.resume_after(self.config.resume_after)
        return builder

    def close(self) -> None:
        """Release the cursor. Further ``next()`` calls raise ``StopIteration``."""
        if self.state is TailState.CLOSED:
            return
        self.state = TailState.CLOSED
        self._buffer.clear()
        self._cursor.close()
        logger.debug(
            "Closed oplog cursor",
            extra={"operations_yielded": self.operations_yielded}
        )

    def __enter__(self) -> "Oplog":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
