"""Tests for the trace recorder."""

import threading

import pytest

from mqttstat.trace import MilestoneKind, TraceRecorder


class TestTraceRecorder:
    """Tests for appending and reading milestones."""

    def test_points_keep_insertion_order(self):
        rec = TraceRecorder()
        rec.add_point(MilestoneKind.TCP_DIAL, 10)
        rec.add_point(MilestoneKind.CONNECT, 5)   # ordering is not validated
        rec.add_point(MilestoneKind.CONNACK, 40)

        assert [p.kind for p in rec.points()] == [
            MilestoneKind.TCP_DIAL, MilestoneKind.CONNECT, MilestoneKind.CONNACK]
        assert [p.timestamp for p in rec.points()] == [10, 5, 40]

    def test_duplicate_kind_rejected(self):
        rec = TraceRecorder()
        rec.add_point(MilestoneKind.CONNECT, 1)
        with pytest.raises(ValueError):
            rec.add_point(MilestoneKind.CONNECT, 2)
        assert len(rec) == 1

    def test_record_first_keeps_earliest(self):
        rec = TraceRecorder()
        assert rec.record_first(MilestoneKind.MESSAGE, 100) is True
        assert rec.record_first(MilestoneKind.MESSAGE, 200) is False
        assert [p.timestamp for p in rec.points()] == [100]

    def test_default_timestamp_is_monotonic(self):
        rec = TraceRecorder()
        a = rec.add_point(MilestoneKind.TCP_DIAL)
        b = rec.add_point(MilestoneKind.CONNECT)
        assert b.timestamp >= a.timestamp

    def test_points_returns_copy(self):
        rec = TraceRecorder()
        rec.add_point(MilestoneKind.TCP_DIAL, 1)
        snapshot = rec.points()
        rec.add_point(MilestoneKind.CONNECT, 2)
        assert len(snapshot) == 1
        assert MilestoneKind.CONNECT in rec

    def test_concurrent_appends_are_serialized(self):
        rec = TraceRecorder()
        kinds = list(MilestoneKind)
        barrier = threading.Barrier(len(kinds))

        def add(kind):
            barrier.wait()
            rec.record_first(kind)

        threads = [threading.Thread(target=add, args=(k,)) for k in kinds]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(p.kind.value for p in rec.points()) == sorted(k.value for k in kinds)
