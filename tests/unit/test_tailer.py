"""Unit tests for the tailing iterator."""

import pytest
from bson import Timestamp
from prometheus_client import REGISTRY

import oplog.tailer as tailer_module
from oplog.builder import OplogBuilder
from oplog.errors import MissingOrInvalidId, OplogConnectionError, UnrecognizedOperation
from oplog.operation import Delete, Insert, Update
from oplog.source import NO_DATA
from oplog.tailer import Oplog, TailState


def insert(seconds, ordinal=1, h=1, _id=1):
    return {"ts": Timestamp(seconds, ordinal), "h": h, "op": "i", "ns": "db.coll", "o": {"_id": _id}}


def batch(seconds, entries, h=7):
    return {
        "ts": Timestamp(seconds, 1),
        "h": h,
        "op": "c",
        "ns": "admin.$cmd",
        "o": {"applyOps": entries},
    }


def sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestOplogIteration:
    """Test pulling operations from the tailer."""

    def test_first_next_returns_decoded_insert(self, make_source):
        """A single insert record comes back as an Insert."""
        source = make_source([
            {"ts": Timestamp(1000, 1), "h": 42, "op": "i", "ns": "db.coll", "o": {"_id": 1, "a": 1}},
        ])
        oplog = OplogBuilder(source=source).build()

        assert next(oplog) == Insert(
            timestamp=Timestamp(1000, 1),
            id=42,
            namespace="db.coll",
            document={"_id": 1, "a": 1},
        )
        assert oplog.state is TailState.AWAITING

    def test_apply_ops_expands_into_successive_operations(self, make_source):
        """A batch record is returned as its constituents, one per call."""
        source = make_source([
            batch(2000, [
                {"op": "i", "ns": "db.coll", "o": {"_id": 1}},
                {"op": "d", "ns": "db.coll", "o": {"_id": 1}},
            ]),
        ])
        oplog = OplogBuilder(source=source).build()

        first = next(oplog)
        assert oplog.state is TailState.DRAINING
        second = next(oplog)
        assert oplog.state is TailState.AWAITING

        assert first == Insert(timestamp=Timestamp(2000, 1), id=7, namespace="db.coll", document={"_id": 1})
        assert second == Delete(timestamp=Timestamp(2000, 1), id=7, namespace="db.coll", query={"_id": 1})
        # The second operation came from the buffer, not the cursor
        assert source.cursors[0].pulls == 1

    def test_blocks_through_empty_polls(self, make_source):
        """Pulls without data are retried rather than ending iteration."""
        source = make_source([NO_DATA, NO_DATA, NO_DATA, insert(1000)])
        before = sample("oplog_empty_polls_total")
        oplog = OplogBuilder(source=source).build()

        assert isinstance(next(oplog), Insert)
        assert source.cursors[0].pulls == 4
        assert sample("oplog_empty_polls_total") - before == 3

    def test_connection_failure_is_raised_without_reconnect(self, make_source):
        """Cursor failures surface to the caller and nothing is reopened."""
        source = make_source([insert(1000), OplogConnectionError("connection reset")])
        oplog = OplogBuilder(source=source).build()

        next(oplog)
        with pytest.raises(OplogConnectionError, match="connection reset"):
            next(oplog)
        assert len(source.opened) == 1

    def test_empty_batch_moves_on_to_next_record(self, make_source):
        source = make_source([batch(1000, []), insert(1001)])
        oplog = OplogBuilder(source=source).build()

        op = next(oplog)
        assert op.timestamp == Timestamp(1001, 1)

    def test_order_is_preserved(self, make_source):
        source = make_source([
            insert(1000, _id=1),
            batch(1001, [
                {"op": "i", "ns": "db.coll", "o": {"_id": 2}},
                {"op": "i", "ns": "db.coll", "o": {"_id": 3}},
            ]),
            NO_DATA,
            insert(1002, _id=4),
        ])
        oplog = OplogBuilder(source=source).build()

        operations = [next(oplog) for _ in range(4)]
        assert [op.document["_id"] for op in operations] == [1, 2, 3, 4]
        timestamps = [op.timestamp for op in operations]
        assert timestamps == sorted(timestamps)

    def test_iterates_with_for_loop(self, make_source):
        source = make_source([insert(1000, _id=1), insert(1001, _id=2)])
        seen = []
        for op in OplogBuilder(source=source).build():
            seen.append(op.document["_id"])
            if len(seen) == 2:
                break
        assert seen == [1, 2]


class TestMalformedRecords:
    """Test that malformed records are reported and skipped."""

    def test_decode_error_skips_only_that_record(self, make_source):
        source = make_source([
            {"ts": Timestamp(1000, 1), "h": 1, "op": "x", "ns": "db.coll"},
            insert(1001),
        ])
        oplog = OplogBuilder(source=source).build()

        with pytest.raises(UnrecognizedOperation) as excinfo:
            next(oplog)
        assert excinfo.value.tag == "x"

        op = next(oplog)
        assert op.timestamp == Timestamp(1001, 1)

    def test_bad_record_is_not_seen_again(self, make_source):
        bad = insert(1000)
        del bad["h"]
        source = make_source([bad, insert(1001), insert(1002)])
        oplog = OplogBuilder(source=source).build()

        with pytest.raises(MissingOrInvalidId):
            next(oplog)
        assert [next(oplog).timestamp for _ in range(2)] == [Timestamp(1001, 1), Timestamp(1002, 1)]

    def test_malformed_batch_entry_fails_whole_batch(self, make_source):
        source = make_source([
            batch(1000, [
                {"op": "i", "ns": "db.coll", "o": {"_id": 1}},
                {"op": "q", "ns": "db.coll"},
            ]),
            insert(1001),
        ])
        oplog = OplogBuilder(source=source).build()

        with pytest.raises(UnrecognizedOperation):
            next(oplog)
        assert next(oplog).timestamp == Timestamp(1001, 1)

    def test_decode_errors_are_counted(self, make_source):
        labels = {"error_type": "UnrecognizedOperation"}
        before = sample("oplog_decode_errors_total", labels)
        source = make_source([{"ts": Timestamp(1, 1), "h": 1, "op": "?"}])
        oplog = OplogBuilder(source=source).build()

        with pytest.raises(UnrecognizedOperation):
            next(oplog)
        assert sample("oplog_decode_errors_total", labels) - before == 1


class TestFilterPushdown:
    """Test that the filter is applied by the source, not in-process."""

    def test_only_matching_records_reach_decoder(self, make_source, monkeypatch):
        pattern = {"op": "u", "ns": "db.coll"}
        seen = []
        real_decode = tailer_module.decode

        def spy(raw):
            seen.append(raw)
            return real_decode(raw)

        monkeypatch.setattr(tailer_module, "decode", spy)
        source = make_source([
            insert(1000),
            {"ts": Timestamp(1001, 1), "h": 2, "op": "u", "ns": "db.coll", "o2": {"_id": 1}, "o": {"$set": {"a": 1}}},
            {"ts": Timestamp(1002, 1), "h": 3, "op": "u", "ns": "db.other", "o2": {"_id": 1}, "o": {"$set": {"a": 1}}},
            {"ts": Timestamp(1003, 1), "h": 4, "op": "u", "ns": "db.coll", "o2": {"_id": 2}, "o": {"$set": {"a": 2}}},
        ])
        oplog = OplogBuilder(source=source).filter(pattern).build()

        operations = [next(oplog), next(oplog)]
        assert all(isinstance(op, Update) for op in operations)
        assert [op.id for op in operations] == [2, 4]
        assert all(raw["op"] == "u" and raw["ns"] == "db.coll" for raw in seen)
        assert source.opened[0]["query"] == pattern


class TestLifecycle:
    """Test state, close and resume helpers."""

    def test_starts_idle(self, make_source):
        oplog = OplogBuilder(source=make_source([])).build()
        assert oplog.state is TailState.IDLE
        assert oplog.last_timestamp is None

    def test_close_releases_cursor_and_stops_iteration(self, make_source):
        source = make_source([insert(1000)])
        oplog = OplogBuilder(source=source).build()
        oplog.close()

        assert source.cursors[0].closed
        assert oplog.state is TailState.CLOSED
        with pytest.raises(StopIteration):
            next(oplog)

    def test_close_is_idempotent(self, make_source):
        oplog = OplogBuilder(source=make_source([])).build()
        oplog.close()
        oplog.close()

    def test_context_manager_closes(self, make_source):
        source = make_source([insert(1000)])
        with OplogBuilder(source=source).build() as oplog:
            next(oplog)
        assert source.cursors[0].closed

    def test_last_timestamp_tracks_yielded_operations(self, make_source):
        source = make_source([insert(1000), insert(1001, ordinal=3)])
        oplog = OplogBuilder(source=source).build()
        next(oplog)
        next(oplog)
        assert oplog.last_timestamp == Timestamp(1001, 3)
        assert oplog.operations_yielded == 2

    def test_resume_builder_resumes_after_last_timestamp(self, make_source):
        builder = OplogBuilder(source=make_source([insert(1000)])).filter({"op": "i"})
        oplog = builder.build()
        next(oplog)

        resumed = oplog.resume_builder(builder)
        assert resumed.query() == {"$and": [{"ts": {"$gt": Timestamp(1000, 1)}}, {"op": "i"}]}

    def test_resume_builder_without_progress_keeps_open_position(self, make_source):
        builder = OplogBuilder(source=make_source([])).filter({"op": "i"})
        oplog = builder.build()
        assert oplog.resume_builder(builder).query() == {"op": "i"}

    def test_resume_builder_without_progress_pins_resolved_latest(self, make_source):
        source = make_source(
            [OplogConnectionError("gone")],
            [insert(1003, _id=2)],
            latest=Timestamp(1000, 1),
        )
        builder = OplogBuilder(source=source).start_at_latest()
        oplog = builder.build()
        with pytest.raises(OplogConnectionError):
            next(oplog)

        source.latest = Timestamp(1005, 1)
        resumed = oplog.resume_builder(builder)
        assert not resumed.config.start_at_latest
        assert next(resumed.build()).document == {"_id": 2}
        assert source.opened[1]["query"] == {"ts": {"$gt": Timestamp(1000, 1)}}

    def test_batch_resumes_after_outer_timestamp(self, make_source):
        """Constituents with their own ts do not move the resume position."""
        outer = batch(2000, [
            {"ts": Timestamp(1500, 1), "h": 11, "op": "i", "ns": "db.coll", "o": {"_id": 1}},
            {"ts": Timestamp(1500, 2), "h": 12, "op": "i", "ns": "db.coll", "o": {"_id": 2}},
        ])
        source = make_source(
            [outer, OplogConnectionError("gone")],
            [outer, insert(2001, _id=3)],
        )
        builder = OplogBuilder(source=source)
        oplog = builder.build()

        next(oplog)
        assert oplog.resume_timestamp is None
        next(oplog)
        assert oplog.last_timestamp == Timestamp(1500, 2)
        assert oplog.resume_timestamp == Timestamp(2000, 1)
        with pytest.raises(OplogConnectionError):
            next(oplog)

        resumed = oplog.resume_builder(builder).build()
        assert next(resumed).document == {"_id": 3}

    def test_partly_drained_batch_is_replayed(self, make_source):
        entries = [
            {"op": "i", "ns": "db.coll", "o": {"_id": 1}},
            {"op": "i", "ns": "db.coll", "o": {"_id": 2}},
        ]
        source = make_source(
            [insert(1000, _id=0), batch(2000, entries)],
            [batch(2000, entries)],
        )
        builder = OplogBuilder(source=source)
        oplog = builder.build()
        next(oplog)
        next(oplog)
        oplog.close()

        resumed = oplog.resume_builder(builder).build()
        assert [next(resumed).document for _ in range(2)] == [{"_id": 1}, {"_id": 2}]
        assert source.opened[1]["query"] == {"ts": {"$gt": Timestamp(1000, 1)}}

    def test_empty_batch_moves_resume_position(self, make_source):
        source = make_source([batch(2000, []), insert(2001, _id=1)])
        oplog = OplogBuilder(source=source).build()
        next(oplog)
        assert oplog.resume_timestamp == Timestamp(2001, 1)

    def test_rebuilt_oplog_continues_after_resume_position(self, make_source):
        source = make_source(
            [insert(1000, _id=1), OplogConnectionError("gone")],
            [insert(1000, _id=1), insert(1001, _id=2)],
        )
        builder = OplogBuilder(source=source)
        oplog = builder.build()
        next(oplog)
        with pytest.raises(OplogConnectionError):
            next(oplog)

        resumed = oplog.resume_builder(builder).build()
        assert next(resumed).document == {"_id": 2}

    def test_new_uses_default_builder(self, monkeypatch):
        built = []

        def fake_build(self):
            built.append(self.config)
            return "oplog"

        monkeypatch.setattr(OplogBuilder, "build", fake_build)
        assert Oplog.new(client=object()) == "oplog"
        assert built[0].namespace == "local.oplog.rs"
