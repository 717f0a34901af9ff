"""
Cursor collaborator for the oplog tailer.

``MongoCursorSource`` opens tailable, await-data cursors over the oplog with
PyMongo. ``CursorHandle`` hands out one raw document per pull and reports
"nothing yet" with the ``NO_DATA`` sentinel instead of ending the sequence.

Anything with the same methods can stand in for these classes, which is how
the tests drive the tailer without a replica set.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Union

from bson import Timestamp
from pymongo import DESCENDING, CursorType
from pymongo.cursor import Cursor
from pymongo.errors import PyMongoError

from .errors import OplogConnectionError

logger = logging.getLogger(__name__)


class _NoData:
    """Sentinel returned by ``pull_next`` when the cursor has nothing new."""

    def __repr__(self) -> str:
        return "NO_DATA"

    def __bool__(self) -> bool:
        return False


NO_DATA = _NoData()

RawDocument = Dict[str, Any]
PullResult = Union[RawDocument, _NoData]


def split_namespace(namespace: str):
    """Split ``db.collection`` into its two parts.

    Raises:
        ValueError: If the namespace has no collection part
    """
    database, _, collection = namespace.partition(".")
    if not database or not collection:
        raise ValueError(f"namespace must look like 'db.collection', got {namespace!r}")
    return database, collection


class CursorHandle:
    """
    Pull interface over a tailable PyMongo cursor.

    Thread Safety: NOT thread-safe. Owned by a single ``Oplog``.
    """

    def __init__(self, cursor: Cursor, namespace: str):
        self._cursor = cursor
        self.namespace = namespace

    def pull_next(self) -> PullResult:
        """
        Pull the next raw document.

        Blocks for at most the cursor's await-data timeout.

        Returns:
            The next document, or ``NO_DATA`` if none arrived in time

        Raises:
            OplogConnectionError: On driver failures or if the cursor died
        """
        try:
            return self._cursor.next()
        except StopIteration:
            if not self._cursor.alive:
                raise OplogConnectionError(
                    f"tailable cursor on {self.namespace} is no longer alive"
                ) from None
            return NO_DATA
        except PyMongoError as e:
            raise OplogConnectionError(f"failed reading {self.namespace}: {e}") from e

    def close(self) -> None:
        self._cursor.close()


class MongoCursorSource:
    """Opens oplog cursors on a caller-owned ``pymongo.MongoClient``."""

    def __init__(self, client):
        self._client = client

    def _collection(self, namespace: str):
        database, collection = split_namespace(namespace)
        return self._client[database][collection]

    def namespace_exists(self, namespace: str) -> bool:
        database, collection = split_namespace(namespace)
        try:
            names = self._client[database].list_collection_names(filter={"name": collection})
        except PyMongoError as e:
            raise OplogConnectionError(f"could not list collections in {database}: {e}") from e
        return collection in names

    def latest_timestamp(self, namespace: str) -> Optional[Timestamp]:
        """Timestamp of the newest entry in the oplog, or ``None`` if it is empty."""
        try:
            entry = self._collection(namespace).find_one(
                {}, projection={"ts": True}, sort=[("$natural", DESCENDING)]
            )
        except PyMongoError as e:
            raise OplogConnectionError(f"could not read {namespace}: {e}") from e
        return entry["ts"] if entry else None

    def open_cursor(
        self,
        namespace: str,
        query: Mapping[str, Any],
        no_cursor_timeout: bool = True,
        await_time_ms: Optional[int] = None,
    ) -> CursorHandle:
        """
        Open a tailable, await-data cursor over ``namespace``.

        Raises:
            OplogConnectionError: If the driver rejects the query
        """
        try:
            cursor = self._collection(namespace).find(
                dict(query),
                cursor_type=CursorType.TAILABLE_AWAIT,
                no_cursor_timeout=no_cursor_timeout,
            )
            if await_time_ms is not None:
                cursor.max_await_time_ms(await_time_ms)
        except PyMongoError as e:
            raise OplogConnectionError(f"could not open cursor on {namespace}: {e}") from e

        logger.debug(
            f"Opened tailable cursor on {namespace}",
            extra={"namespace": namespace, "query": query, "no_cursor_timeout": no_cursor_timeout}
        )
        return CursorHandle(cursor, namespace)
