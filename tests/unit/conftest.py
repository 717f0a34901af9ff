"""Shared test doubles for the oplog tests."""

from typing import Any, Dict, List, Mapping

import pytest
from bson import Timestamp

from oplog.source import NO_DATA

_MISSING = object()


def matches(document: Mapping, query: Mapping) -> bool:
    """Evaluate the small subset of the query language the tailer sends."""
    for key, condition in query.items():
        if key == "$and":
            if not all(matches(document, clause) for clause in condition):
                return False
            continue

        value = document.get(key, _MISSING)
        if isinstance(condition, Mapping) and any(k.startswith("$") for k in condition):
            for operator, operand in condition.items():
                if operator == "$gt":
                    if value is _MISSING or not value > operand:
                        return False
                elif operator == "$in":
                    if value not in operand:
                        return False
                else:
                    raise ValueError(f"unsupported operator {operator}")
        elif value != condition:
            return False
    return True


class FakeCursor:
    """Cursor handle replaying scripted events.

    Events are raw documents, ``NO_DATA`` or exception instances to raise.
    Documents that do not match the query are never handed out.
    """

    def __init__(self, events: List[Any], query: Mapping):
        self.events = list(events)
        self.query = query
        self.pulls = 0
        self.closed = False

    def pull_next(self):
        while True:
            self.pulls += 1
            if not self.events:
                raise AssertionError("pulled past the scripted events")
            event = self.events.pop(0)
            if event is NO_DATA:
                return NO_DATA
            if isinstance(event, Exception):
                raise event
            if matches(event, self.query):
                return event

    def close(self):
        self.closed = True


class FakeSource:
    """Cursor source opening one ``FakeCursor`` per script, in order."""

    def __init__(self, *scripts: List[Any], exists: bool = True, latest: Timestamp = None):
        self.scripts = list(scripts)
        self.exists = exists
        self.latest = latest
        self.opened: List[Dict[str, Any]] = []
        self.cursors: List[FakeCursor] = []

    def namespace_exists(self, namespace: str) -> bool:
        return self.exists

    def latest_timestamp(self, namespace: str):
        return self.latest

    def open_cursor(self, namespace, query, no_cursor_timeout=True, await_time_ms=None):
        self.opened.append({
            "namespace": namespace,
            "query": query,
            "no_cursor_timeout": no_cursor_timeout,
            "await_time_ms": await_time_ms,
        })
        cursor = FakeCursor(self.scripts.pop(0) if self.scripts else [], query)
        self.cursors.append(cursor)
        return cursor


@pytest.fixture
def make_source():
    """Factory for ``FakeSource`` instances."""
    return FakeSource
