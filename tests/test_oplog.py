"""Operation log model: payload decoding, timestamp derivation, baseline lifting."""
from datetime import datetime, timezone
from pathlib import Path

import pytest

from storeutil import TASK_A, TASK_B, create, delete, dt, epoch, ts, update
from tcmerge.errors import CorruptStore
from tcmerge.oplog import OperationLog, encode_operation, parse_timestamp
from tcmerge.schema import CREATE, DELETE, EPOCH, UPDATE, RawOperation, StoreSnapshot


def snapshot(payloads, tasks=None, replica="r1"):
    ops = [RawOperation(id=n, payload=p) for n, p in enumerate(payloads, start=1)]
    return StoreSnapshot(path=Path("store.sqlite3"), replica_id=replica, tasks=tasks or {}, operations=ops)


class TestParseTimestamp:
    def test_nanoseconds_truncated(self):
        got = parse_timestamp("2024-03-05T10:11:12.123456789Z")
        assert got == datetime(2024, 3, 5, 10, 11, 12, 123456, tzinfo=timezone.utc)

    def test_offset_normalized_to_utc(self):
        assert parse_timestamp("2024-01-01T02:00:00+02:00") == dt(0)

    def test_epoch_string(self):
        assert parse_timestamp(epoch(30)) == dt(30)

    def test_garbage(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None

    def test_out_of_range_epoch(self):
        assert parse_timestamp("99999999999999") is None
        assert parse_timestamp(10 ** 20) is None
        assert parse_timestamp(float("inf")) is None
        assert parse_timestamp(float("nan")) is None


class TestFromSnapshot:
    def test_create_takes_next_update_timestamp(self):
        log = OperationLog.from_snapshot(snapshot([
            create(TASK_A),
            update(TASK_A, "description", "x", ts(7)),
        ], tasks={TASK_A: {"description": "x"}}))
        kinds = [(op.kind, op.timestamp, op.sequence) for op in log]
        assert kinds == [(CREATE, dt(7), 1), (UPDATE, dt(7), 2)]

    def test_delete_carries_previous_timestamp(self):
        log = OperationLog.from_snapshot(snapshot([
            create(TASK_A),
            update(TASK_A, "description", "x", ts(3)),
            delete(TASK_A),
        ]))
        assert log.entries[-1].kind == DELETE
        assert log.entries[-1].timestamp == dt(3)

    def test_delete_uses_old_task_modified_when_later(self):
        log = OperationLog.from_snapshot(snapshot([
            create(TASK_A),
            update(TASK_A, "description", "x", ts(3)),
            delete(TASK_A, modified=epoch(9)),
        ]))
        assert log.entries[-1].timestamp == dt(9)

    def test_delete_ignores_unusable_modified(self):
        log = OperationLog.from_snapshot(snapshot([
            create(TASK_B),
            update(TASK_B, "description", "x", ts(3)),
            delete(TASK_B, modified="99999999999999"),
        ]))
        assert log.entries[-1].timestamp == dt(3)

    def test_lone_create_falls_back_to_epoch(self):
        log = OperationLog.from_snapshot(snapshot([create(TASK_A)], tasks={TASK_A: {}}))
        assert log.entries[0].timestamp == EPOCH

    def test_undo_points_skipped(self):
        log = OperationLog.from_snapshot(snapshot([
            "UndoPoint",
            create(TASK_A),
            update(TASK_A, "description", "x", ts(1)),
        ], tasks={TASK_A: {"description": "x"}}))
        assert [op.sequence for op in log] == [2, 3]

    def test_replica_and_raw_kept(self):
        log = OperationLog.from_snapshot(snapshot([create(TASK_A)], tasks={TASK_A: {}}, replica="rX"))
        op = log.entries[0]
        assert op.replica_id == "rX"
        assert '"Create"' in op.raw
        assert not op.synthetic

    def test_unknown_operation(self):
        with pytest.raises(CorruptStore, match="operation #1"):
            OperationLog.from_snapshot(snapshot([{"Rename": {"uuid": TASK_A}}]))

    def test_bad_update_timestamp(self):
        with pytest.raises(CorruptStore, match="bad timestamp"):
            OperationLog.from_snapshot(snapshot([update(TASK_A, "description", "x", "soon")]))

    def test_update_without_property(self):
        body = update(TASK_A, "description", "x", ts(1))
        del body["Update"]["property"]
        with pytest.raises(CorruptStore, match="operation #2.*property"):
            OperationLog.from_snapshot(snapshot([create(TASK_A), body], tasks={TASK_A: {}}))

    def test_update_with_empty_property(self):
        with pytest.raises(CorruptStore, match="property"):
            OperationLog.from_snapshot(snapshot([update(TASK_A, "", "x", ts(1))]))


class TestBaseline:
    def test_consistent_store_needs_no_baseline(self):
        log = OperationLog.from_snapshot(snapshot([
            create(TASK_A),
            update(TASK_A, "description", "x", ts(1)),
        ], tasks={TASK_A: {"description": "x"}}))
        assert not any(op.synthetic for op in log)

    def test_task_without_log_is_lifted(self):
        tasks = {TASK_B: {"description": "old", "modified": epoch(20)}}
        log = OperationLog.from_snapshot(snapshot([], tasks=tasks))
        lifted = log.for_task(TASK_B)
        assert [op.kind for op in lifted] == [CREATE, UPDATE, UPDATE]
        assert all(op.synthetic and op.synced for op in lifted)
        assert all(op.sequence < 0 for op in lifted)
        assert all(op.timestamp == dt(20) for op in lifted)
        assert {op.field: op.value for op in lifted if op.kind == UPDATE} == tasks[TASK_B]

    def test_divergent_field_is_lifted(self):
        log = OperationLog.from_snapshot(snapshot([
            create(TASK_A),
            update(TASK_A, "description", "x", ts(1)),
        ], tasks={TASK_A: {"description": "x", "project": "home", "modified": epoch(5)}}))
        lifted = [op for op in log if op.synthetic]
        assert sorted(op.field for op in lifted) == ["modified", "project"]

    def test_baseline_disabled(self):
        log = OperationLog.from_snapshot(snapshot([], tasks={TASK_B: {"description": "x"}}),
                                         lift_baseline=False)
        assert len(log) == 0


def test_encode_update_round_trips_through_decoder():
    log = OperationLog.from_snapshot(snapshot([], tasks={TASK_B: {"description": "d", "entry": epoch(4)}}))
    upd = next(op for op in log if op.kind == UPDATE and op.field == "description")
    text = encode_operation(upd)
    assert '"property":"description"' in text
    assert '"timestamp":"2024-01-01T00:00:04.000000Z"' in text
