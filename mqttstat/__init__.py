"""mqttstat: phase-by-phase latency diagnostics for MQTT brokers."""

from .client import Client, State
from .correlation import AckResult, CorrelationTable, Handoff
from .render import render_bars, render_waterfall
from .stat import Field, Stat, parse_stat
from .trace import MilestoneKind, TracePoint, TraceRecorder

__version__ = "0.1.0"

__all__ = [
    "AckResult",
    "Client",
    "CorrelationTable",
    "Field",
    "Handoff",
    "MilestoneKind",
    "Stat",
    "State",
    "TracePoint",
    "TraceRecorder",
    "parse_stat",
    "render_bars",
    "render_waterfall",
]
