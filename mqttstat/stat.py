"""
Phase segmentation: turn one attempt's milestone log into timed fields.

The walk follows the fixed logical milestone order, never insertion order.
Opening milestones close the previous field at their own instant and start
a new one; closing milestones (the replies) set the current field's cost.
The time a client spends between a reply and its next request is therefore
charged to the earlier field, and the field costs always add up to the
whole attempt.

The message field is special: it starts where the previous field ended,
so it measures how long the broker sat idle before pushing a message, not
how long the client took to notice it.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .errors import IncompleteTrace
from .trace import MilestoneKind, TracePoint

DNS_LOOKUP_FIELD     = "DNS Lookup"
TCP_CONNECTION_FIELD = "TCP Connection"
TLS_HANDSHAKE_FIELD  = "TLS Handshake"
MQTT_CONNECTION_FIELD = "MQTT Connection"
MQTT_SUBSCRIBE_FIELD = "MQTT Subscribe"
MQTT_PUBLISH_FIELD   = "MQTT Publish"
MQTT_PING_FIELD      = "MQTT Ping"
MQTT_MESSAGE_FIELD   = "MQTT Message Received"

COLUMN_PADDING = 3

# opening milestone -> (field name, closing milestone)
_PHASES = (
    (MilestoneKind.DNS_LOOKUP, DNS_LOOKUP_FIELD,      None),
    (MilestoneKind.TCP_DIAL,   TCP_CONNECTION_FIELD,  None),
    (MilestoneKind.TLS_DIAL,   TLS_HANDSHAKE_FIELD,   None),
    (MilestoneKind.CONNECT,    MQTT_CONNECTION_FIELD, MilestoneKind.CONNACK),
    (MilestoneKind.SUBSCRIBE,  MQTT_SUBSCRIBE_FIELD,  MilestoneKind.SUBACK),
    (MilestoneKind.PUBLISH,    MQTT_PUBLISH_FIELD,    MilestoneKind.PUBACK),
    (MilestoneKind.PING,       MQTT_PING_FIELD,       MilestoneKind.PONG),
)

# fields that complete a request/reply group carry the closing bracket
_GROUP_ENDS = {MQTT_CONNECTION_FIELD, MQTT_SUBSCRIBE_FIELD, MQTT_PUBLISH_FIELD,
               MQTT_PING_FIELD, MQTT_MESSAGE_FIELD}


def column_width(name: str) -> int:
    return len(name) + COLUMN_PADDING


@dataclass
class Field:
    name:        str
    start:       int                 # ns
    cost:        int = 0             # ns
    open_glyph:  str = "|"
    close_glyph: str = ""
    width:       int = 0

    def __post_init__(self):
        if not self.width:
            self.width = column_width(self.name)

    @property
    def finished_at(self) -> int:
        return self.start + self.cost


@dataclass
class Stat:
    fields: List[Field] = field(default_factory=list)
    begin:  int = 0
    end:    int = 0

    @property
    def total(self) -> int:
        return self.end - self.begin


def _open(stat: Stat, name: str, at: int) -> Field:
    if stat.fields:
        prev = stat.fields[-1]
        prev.cost = max(0, at - prev.start)
        prev.close_glyph = ""
    f = Field(name=name, start=at,
              open_glyph="|" if stat.fields else "[",
              close_glyph="]" if name in _GROUP_ENDS else "")
    stat.fields.append(f)
    return f


def parse_stat(points: Sequence[TracePoint]) -> Stat:
    """Segment a completed attempt. Raises IncompleteTrace before CONNACK."""
    ts: Dict[MilestoneKind, int] = {p.kind: p.timestamp for p in points}
    if MilestoneKind.CONNECT not in ts or MilestoneKind.CONNACK not in ts:
        raise IncompleteTrace(
            "attempt stopped before the MQTT handshake completed")

    stat = Stat(begin=min(ts.values()), end=max(ts.values()))
    current: Optional[Field] = None
    for opening, name, closing in _PHASES:
        if opening not in ts:
            continue
        current = _open(stat, name, ts[opening])
        if closing is not None and closing in ts:
            current.cost = max(0, ts[closing] - current.start)

    if MilestoneKind.MESSAGE in ts:
        idle_from = current.finished_at
        current = _open(stat, MQTT_MESSAGE_FIELD, idle_from)
        current.cost = max(0, ts[MilestoneKind.MESSAGE] - idle_from)

    # whatever follows the last field's own reply still belongs to it
    last = stat.fields[-1]
    last.cost = max(last.cost, stat.end - last.start)
    return stat


def format_duration(ns: int) -> str:
    """Render nanoseconds the way Go prints a time.Duration."""
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    u = abs(ns)
    if u < 1_000:
        return f"{sign}{u}ns"
    if u < 1_000_000:
        return sign + _decimal(u, 3) + "µs"
    if u < 1_000_000_000:
        return sign + _decimal(u, 6) + "ms"
    hours, rem = divmod(u, 3600 * 10**9)
    minutes, rem = divmod(rem, 60 * 10**9)
    seconds = _decimal(rem, 9) + "s"
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}"
    if minutes:
        return f"{sign}{minutes}m{seconds}"
    return sign + seconds


def _decimal(value: int, places: int) -> str:
    whole, frac = divmod(value, 10**places)
    if not frac:
        return str(whole)
    return f"{whole}." + str(frac).rjust(places, "0").rstrip("0")
