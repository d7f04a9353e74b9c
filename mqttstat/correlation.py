"""
Request/reply matching keyed by MQTT packet identifier.

Abandonment rule: a registered request is consumed exactly once, either by
`resolve` when the broker answers or by `abandon_all` / `discard` when the
connection goes away first. Callers must never assume every `register` is
eventually matched by a `resolve`.
"""

import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass(frozen=True)
class AckResult:
    packet_id:   Optional[int]
    packet:      Any            # decoded reply, passed through unmodified
    received_at: int            # ns, stamped by the receive path


class Handoff:
    """
    Single-slot blocking handoff of one result (or one failure).

    *on_delivery* runs in the waiting thread the first time the result is
    consumed; the client uses it to record reply milestones.
    """

    def __init__(self, on_delivery: Optional[Callable[[Any], None]] = None):
        self._slot: queue.Queue = queue.Queue(maxsize=1)
        self._on_delivery = on_delivery
        self._result: Any = None
        self._error: Optional[BaseException] = None
        self._done = False
        self._lock = threading.Lock()

    def deliver(self, value: Any) -> bool:
        try:
            self._slot.put_nowait((value, None))
            return True
        except queue.Full:
            return False

    def fail(self, error: BaseException) -> bool:
        try:
            self._slot.put_nowait((None, error))
            return True
        except queue.Full:
            return False

    def wait(self, timeout: Optional[float] = None) -> Any:
        """
        Block until the result arrives. Raises the delivered failure, or
        TimeoutError if *timeout* expires. Repeated calls return the same
        result.
        """
        with self._lock:
            if not self._done:
                try:
                    value, error = self._slot.get(timeout=timeout)
                except queue.Empty:
                    raise TimeoutError("no reply within %.3fs" % timeout) from None
                self._result, self._error, self._done = value, error, True
                if error is None and self._on_delivery is not None:
                    self._on_delivery(value)
        if self._error is not None:
            raise self._error
        return self._result

    @property
    def ready(self) -> bool:
        return self._done or not self._slot.empty()

    @classmethod
    def completed(cls, value: Any) -> "Handoff":
        h = cls()
        h.deliver(value)
        return h


class CorrelationTable:
    """Thread-safe packet_id -> Handoff store."""

    def __init__(self):
        self._pending: Dict[int, Handoff] = {}
        self._lock = threading.Lock()

    def register(self, packet_id: int,
                 on_delivery: Optional[Callable[[Any], None]] = None) -> Handoff:
        handoff = Handoff(on_delivery)
        with self._lock:
            if packet_id in self._pending:
                raise ValueError(f"packet id {packet_id} is already pending")
            self._pending[packet_id] = handoff
        return handoff

    def resolve(self, packet_id: int, reply: Any) -> bool:
        """
        Hand *reply* to the waiter of *packet_id*. Unknown, duplicate and
        late replies return False and are dropped.
        """
        with self._lock:
            handoff = self._pending.pop(packet_id, None)
        if handoff is None:
            return False
        handoff.deliver(reply)
        return True

    def discard(self, packet_id: int) -> bool:
        with self._lock:
            return self._pending.pop(packet_id, None) is not None

    def abandon_all(self, error: BaseException) -> int:
        """Fail every outstanding waiter with *error*; returns how many."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for handoff in pending:
            handoff.fail(error)
        return len(pending)

    def __contains__(self, packet_id: int) -> bool:
        with self._lock:
            return packet_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
