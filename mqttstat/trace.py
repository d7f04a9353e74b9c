"""Milestone log of a single connection attempt."""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional


class MilestoneKind(str, Enum):
    DNS_LOOKUP = "DNSLookup"
    TCP_DIAL   = "TCPDial"
    TLS_DIAL   = "TLSDial"
    CONNECT    = "Connect"
    CONNACK    = "Connack"
    SUBSCRIBE  = "Subscribe"
    SUBACK     = "Suback"
    PUBLISH    = "Publish"
    PUBACK     = "Puback"
    PING       = "Ping"
    PONG       = "Pong"
    MESSAGE    = "Message"


def now() -> int:
    """Monotonic instant in nanoseconds."""
    return time.perf_counter_ns()


@dataclass(frozen=True)
class TracePoint:
    kind:      MilestoneKind
    timestamp: int              # ns, monotonic


class TraceRecorder:
    """
    Append-only, insertion-ordered log of milestones.

    Written from both the foreground state machine and the background
    receive path, so appends are serialized. Each kind may appear once.
    """

    def __init__(self):
        self._points: List[TracePoint] = []
        self._seen: Dict[MilestoneKind, TracePoint] = {}
        self._lock = threading.Lock()

    def add_point(self, kind: MilestoneKind,
                  timestamp: Optional[int] = None) -> TracePoint:
        point = TracePoint(kind, now() if timestamp is None else timestamp)
        with self._lock:
            if kind in self._seen:
                raise ValueError(f"milestone {kind.value} already recorded")
            self._seen[kind] = point
            self._points.append(point)
        return point

    def record_first(self, kind: MilestoneKind,
                     timestamp: Optional[int] = None) -> bool:
        """Append *kind* unless it is already present. Returns True if added."""
        point = TracePoint(kind, now() if timestamp is None else timestamp)
        with self._lock:
            if kind in self._seen:
                return False
            self._seen[kind] = point
            self._points.append(point)
        return True

    def points(self) -> List[TracePoint]:
        with self._lock:
            return list(self._points)

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)

    def __contains__(self, kind: MilestoneKind) -> bool:
        with self._lock:
            return kind in self._seen
