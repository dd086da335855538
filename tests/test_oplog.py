"""Tests for the operation log file and its record codec."""

import json
import logging

import pytest

from kodo.errors import CorruptionError
from kodo.storage.codec import (
    RecordError,
    decode_operation,
    encode_operation,
    operation_from_record,
    operation_to_record,
)
from kodo.storage.oplog import OpLog, salvage_clock
from kodo.types import LogicalClock, MergeInfo


class TestCodec:
    def test_encode_is_single_line(self, make_op):
        line = encode_operation(make_op(body="line one\nline two"))
        assert "\n" not in line

    def test_decode_restores_operation(self, make_op):
        op = make_op(tags={"auth"}, context={"alpha": 1, "beta": 4})
        decoded = decode_operation(encode_operation(op))
        assert decoded.clock == op.clock
        assert decoded.context == {"alpha": 1, "beta": 4}
        assert decoded.payload.user_fields() == op.payload.user_fields()
        assert decoded.payload.causal_context == decoded.context

    def test_merge_info_survives(self, make_op):
        op = make_op(counter=5)
        op.merge = MergeInfo(
            parents=[LogicalClock("alpha", 4), LogicalClock("beta", 3)],
            strategy="theirs",
            superseded=[LogicalClock("alpha", 4)],
        )
        decoded = decode_operation(encode_operation(op))
        assert decoded.is_merge
        assert decoded.merge.superseded == [LogicalClock("alpha", 4)]

    def test_invalid_json(self):
        with pytest.raises(RecordError, match="invalid JSON"):
            decode_operation("{oops")

    def test_schema_violation_names_location(self, make_op):
        record = operation_to_record(make_op())
        record["payload"]["category"] = "gossip"
        with pytest.raises(RecordError, match="payload/category"):
            operation_from_record(record)

    def test_payload_id_must_match(self, make_op):
        record = operation_to_record(make_op())
        record["payload"]["id"] = "other"
        with pytest.raises(RecordError, match="does not match"):
            operation_from_record(record)

    def test_missing_context_defaults_to_own_clock(self, make_op):
        record = operation_to_record(make_op(counter=3))
        del record["context"]
        assert operation_from_record(record).context == {"alpha": 3}


class TestOpLog:
    def test_empty_log(self, tmp_path):
        log = OpLog(tmp_path / "oplog.ndjson")
        read = log.read()
        assert read.operations == []
        assert log.size() == 0

    def test_append_is_one_transaction(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        size = log.append([make_op("e1", counter=1), make_op("e2", counter=2)])
        assert size == log.size()
        records = [json.loads(line) for line in log.path.read_text().splitlines()]
        assert {r["txn"] for r in records} == {records[0]["txn"]}
        assert [r["txn_seq"] for r in records] == [0, 1]
        assert all(r["txn_size"] == 2 for r in records)

        read = log.read()
        assert [op.entry_id for op in read.operations] == ["e1", "e2"]
        assert read.committed_offset == size
        assert read.committed_lines == 2
        assert not read.has_uncommitted_tail

    def test_read_from_offset(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        first = log.append([make_op("e1", counter=1)])
        log.append([make_op("e2", counter=2)])
        read = log.read(first, 1)
        assert [op.entry_id for op in read.operations] == ["e2"]
        assert read.committed_lines == 2

    def test_torn_final_line_is_uncommitted(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        committed = log.append([make_op("e1", counter=1)])
        log.append([make_op("e2", counter=2)])
        with open(log.path, "r+b") as f:
            f.truncate(log.size() - 10)
        read = log.read()
        assert [op.entry_id for op in read.operations] == ["e1"]
        assert read.committed_offset == committed
        assert read.has_uncommitted_tail

    def test_partial_transaction_is_uncommitted(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        committed = log.append([make_op("e1", counter=1)])
        log.append([make_op("e2", counter=2), make_op("e3", counter=3)])
        lines = log.path.read_bytes().splitlines(keepends=True)
        log.path.write_bytes(b"".join(lines[:2]))  # second txn lost its last record
        read = log.read()
        assert [op.entry_id for op in read.operations] == ["e1"]
        assert read.committed_offset == committed
        assert read.uncommitted_bytes == len(lines[1])

    def test_garbage_mid_log_is_corruption(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        log.append([make_op("e1", counter=1)])
        with open(log.path, "ab") as f:
            f.write(b"this is not json\n")
        log.append([make_op("e2", counter=2)])
        with pytest.raises(CorruptionError) as exc_info:
            log.read()
        assert exc_info.value.line == 2

    def test_interleaved_transaction_is_corruption(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        log.append([make_op("e1", counter=1), make_op("e2", counter=2)])
        lines = log.path.read_bytes().splitlines(keepends=True)
        log.path.write_bytes(lines[0])
        log.append([make_op("e3", counter=3)])
        with pytest.raises(CorruptionError, match="followed by another transaction"):
            log.read()

    def test_salvage_stops_at_garbage(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        committed = log.append([make_op("e1", counter=1)])
        with open(log.path, "ab") as f:
            f.write(b"this is not json\n")
        log.append([make_op("e2", counter=2)])
        read = log.read(salvage=True)
        assert [op.entry_id for op in read.operations] == ["e1"]
        assert read.committed_offset == committed
        assert read.committed_lines == 1
        assert read.corruption.line == 2

    def test_salvage_drops_interrupted_transaction(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        log.append([make_op("e1", counter=1), make_op("e2", counter=2)])
        lines = log.path.read_bytes().splitlines(keepends=True)
        log.path.write_bytes(lines[0])
        log.append([make_op("e3", counter=3)])
        read = log.read(salvage=True)
        assert read.operations == []
        assert read.committed_offset == 0
        assert read.corruption.line == 2

    def test_split_off_moves_tail(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        first = log.append([make_op("e1", counter=1)])
        log.append([make_op("e2", counter=2)])
        dest = tmp_path / "tail"
        moved = log.split_off(first, dest)
        assert len(moved) == 1
        assert salvage_clock(moved[0]) == LogicalClock("alpha", 2)
        assert log.size() == first
        assert [op.entry_id for op in OpLog(dest).read().operations] == ["e2"]

    def test_salvage_clock_of_garbage(self):
        assert salvage_clock(b"{not json") is None
        assert salvage_clock(b'{"clock": 7}') is None
        assert salvage_clock(b'{"clock": ["beta", 4], "op": ') is None
        assert salvage_clock(b'{"clock": ["beta", 4]}') == LogicalClock("beta", 4)

    def test_truncate_and_rewrite(self, tmp_path, make_op):
        log = OpLog(tmp_path / "oplog.ndjson")
        first = log.append([make_op("e1", counter=1)])
        log.append([make_op("e2", counter=2)])
        log.truncate(first)
        assert [op.entry_id for op in log.read().operations] == ["e1"]
        log.rewrite([make_op("e9", counter=9)])
        assert [op.entry_id for op in log.read().operations] == ["e9"]


class TestWriterRecovery:
    def test_next_writer_truncates_uncommitted_tail(self, store, make_entry, caplog):
        store.put(make_entry(title="First"))
        committed = store.oplog.size()
        with open(store.oplog.path, "ab") as f:
            f.write(b'{"op":"Insert","entry_id":"half')

        assert len(store.list()) == 1  # readers ignore the tail

        with caplog.at_level(logging.WARNING, logger="kodo.storage.store"):
            store.put(make_entry(title="Second"))
        assert "uncommitted" in caplog.text
        read = store.oplog.read()
        assert not read.has_uncommitted_tail
        assert len(read.operations) == 2
        assert read.committed_offset > committed
