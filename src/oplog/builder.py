"""
Builder for oplog tailing sessions.

Example:
    >>> oplog = (
    ...     OplogBuilder(client)
    ...     .filter({"op": "i"})
    ...     .resume_after(Timestamp(1479561394, 0))
    ...     .build()
    ... )
    >>> for insert in oplog:
    ...     print(insert)
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from bson import Timestamp

from .errors import BuildError, OplogNotFound
from .source import MongoCursorSource, split_namespace
from .tailer import Oplog

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "local.oplog.rs"


@dataclass(frozen=True)
class OplogConfig:
    """Configuration for an oplog tailing session."""
    filter: Optional[Mapping] = None  # Pushed down to the cursor query as-is
    resume_after: Optional[Timestamp] = None  # Only entries with a later ts
    start_at_latest: bool = False  # Resolve resume_after to the newest entry at build time
    no_cursor_timeout: bool = True
    await_time_ms: Optional[int] = None  # Server-side await-data bound
    namespace: str = DEFAULT_NAMESPACE

    def __post_init__(self):
        """Validate configuration values."""
        if self.filter is not None and not isinstance(self.filter, Mapping):
            raise ValueError("filter must be a document")
        if self.resume_after is not None and not isinstance(self.resume_after, Timestamp):
            raise ValueError("resume_after must be a BSON Timestamp")
        if self.resume_after is not None and self.start_at_latest:
            raise ValueError("resume_after and start_at_latest are mutually exclusive")
        if self.await_time_ms is not None and self.await_time_ms <= 0:
            raise ValueError("await_time_ms must be positive")
        split_namespace(self.namespace)

    def query(self) -> Dict[str, Any]:
        """Combine the resume position and the filter into one cursor query."""
        clauses = []
        if self.resume_after is not None:
            clauses.append({"ts": {"$gt": self.resume_after}})
        if self.filter is not None:
            clauses.append(dict(self.filter))

        if not clauses:
            return {}
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}


class OplogBuilder:
    """
    Assembles an ``OplogConfig`` through chained calls and builds the ``Oplog``.

    Every option method returns a new builder; the receiver is left unchanged,
    so a partially configured builder can be shared and extended safely.

    Args:
        client: Caller-owned ``pymongo.MongoClient`` connected to a replica set
        source: Alternative cursor collaborator (anything shaped like
            ``MongoCursorSource``); takes precedence over ``client``
        config: Starting configuration
    """

    def __init__(self, client=None, source=None, config: Optional[OplogConfig] = None):
        self._client = client
        self._source = source
        self.config = config or OplogConfig()

    def _with(self, **changes) -> "OplogBuilder":
        return OplogBuilder(
            client=self._client,
            source=self._source,
            config=replace(self.config, **changes),
        )

    def filter(self, pattern: Optional[Mapping]) -> "OplogBuilder":
        """Restrict the oplog to entries matching ``pattern``. ``None`` matches all."""
        return self._with(filter=pattern)

    def resume_after(self, timestamp: Optional[Timestamp]) -> "OplogBuilder":
        """Start just after ``timestamp``, typically the last one processed."""
        return self._with(resume_after=timestamp, start_at_latest=False)

    def start_at_latest(self, enabled: bool = True) -> "OplogBuilder":
        """Skip existing history and only yield entries written after build()."""
        return self._with(start_at_latest=enabled, resume_after=None)

    def no_cursor_timeout(self, enabled: bool = True) -> "OplogBuilder":
        return self._with(no_cursor_timeout=enabled)

    def await_time(self, milliseconds: Optional[int]) -> "OplogBuilder":
        return self._with(await_time_ms=milliseconds)

    def namespace(self, namespace: str) -> "OplogBuilder":
        return self._with(namespace=namespace)

    def query(self) -> Dict[str, Any]:
        return self.config.query()

    def _resolve_source(self):
        if self._source is not None:
            return self._source
        if self._client is None:
            raise BuildError("a MongoDB client or cursor source is required to build an oplog")
        return MongoCursorSource(self._client)

    def build(self) -> Oplog:
        """
        Open a tailable cursor and return the iterator over it.

        Returns:
            A new ``Oplog`` positioned according to the configuration

        Raises:
            BuildError: If no client or source was given
            OplogNotFound: If the oplog namespace does not exist
            OplogConnectionError: If the cursor could not be opened
        """
        source = self._resolve_source()
        config = self.config

        if not source.namespace_exists(config.namespace):
            raise OplogNotFound(config.namespace)

        if config.start_at_latest:
            latest = source.latest_timestamp(config.namespace)
            config = replace(config, start_at_latest=False, resume_after=latest)

        query = config.query()
        logger.info(
            f"Opening oplog cursor on {config.namespace}",
            extra={
                "namespace": config.namespace,
                "has_filter": config.filter is not None,
                "resume_after": str(config.resume_after) if config.resume_after else None,
                "no_cursor_timeout": config.no_cursor_timeout,
            }
        )
        cursor = source.open_cursor(
            config.namespace,
            query,
            no_cursor_timeout=config.no_cursor_timeout,
            await_time_ms=config.await_time_ms,
        )
        return Oplog(cursor, config=config)
