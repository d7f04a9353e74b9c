"""Tests for the correlation table and handoffs."""

import random
import threading

import pytest

from mqttstat.correlation import CorrelationTable, Handoff
from mqttstat.errors import Interrupted


class TestHandoff:
    """Tests for the single-slot handoff."""

    def test_wait_returns_delivered_value(self):
        h = Handoff()
        assert h.deliver("ack") is True
        assert h.wait() == "ack"
        assert h.wait() == "ack"

    def test_second_delivery_is_refused(self):
        h = Handoff()
        h.deliver(1)
        assert h.deliver(2) is False
        assert h.wait() == 1

    def test_failure_is_raised_to_waiter(self):
        h = Handoff()
        h.fail(Interrupted("gone"))
        with pytest.raises(Interrupted):
            h.wait()

    def test_timeout(self):
        with pytest.raises(TimeoutError):
            Handoff().wait(timeout=0.01)

    def test_on_delivery_runs_once_in_waiter(self):
        seen = []
        h = Handoff(on_delivery=lambda v: seen.append((v, threading.current_thread())))
        h.deliver("x")
        h.wait()
        h.wait()
        assert seen == [("x", threading.current_thread())]

    def test_completed(self):
        h = Handoff.completed(42)
        assert h.ready
        assert h.wait() == 42


class TestCorrelationTable:
    """Tests for register/resolve bookkeeping."""

    def test_each_resolve_reaches_its_register(self):
        table = CorrelationTable()
        ids = list(range(1, 51))
        handoffs = {i: table.register(i) for i in ids}

        order = ids[:]
        random.Random(7).shuffle(order)
        for i in order:
            assert table.resolve(i, f"reply-{i}") is True

        for i in ids:
            assert handoffs[i].wait(timeout=1) == f"reply-{i}"
        assert len(table) == 0

    def test_resolve_unknown_id_has_no_effect(self):
        table = CorrelationTable()
        h = table.register(5)
        assert table.resolve(6, "stray") is False
        assert len(table) == 1
        assert not h.ready

    def test_duplicate_reply_is_dropped(self):
        table = CorrelationTable()
        h = table.register(9)
        assert table.resolve(9, "first") is True
        assert table.resolve(9, "again") is False
        assert h.wait() == "first"

    def test_register_live_id_rejected(self):
        table = CorrelationTable()
        table.register(3)
        with pytest.raises(ValueError):
            table.register(3)

    def test_discard_evicts_entry(self):
        table = CorrelationTable()
        table.register(4)
        assert table.discard(4) is True
        assert 4 not in table
        assert table.discard(4) is False
        table.register(4)

    def test_abandon_all_unblocks_waiters(self):
        table = CorrelationTable()
        h1, h2 = table.register(1), table.register(2)
        errors = []

        def waiter(h):
            try:
                h.wait()
            except Interrupted as exc:
                errors.append(exc)

        threads = [threading.Thread(target=waiter, args=(h,)) for h in (h1, h2)]
        for t in threads:
            t.start()
        assert table.abandon_all(Interrupted("connection closed")) == 2
        for t in threads:
            t.join(timeout=2)

        assert len(errors) == 2
        assert len(table) == 0
        assert table.resolve(1, "late") is False

    def test_resolve_from_another_thread(self):
        table = CorrelationTable()
        h = table.register(77)
        t = threading.Thread(target=table.resolve, args=(77, "puback"))
        t.start()
        assert h.wait(timeout=2) == "puback"
        t.join()
