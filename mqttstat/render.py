"""
Text renderers for a segmented attempt.

Both renderers are pure: they take fields and return text. Colour goes
through an optional ``emphasize(text, tone)`` callable (see terminal.py);
every width is computed from the plain text, so the layout is identical
with or without colour.

Waterfall example::

      TCP Connection   MQTT Connection
    [      5ms       |      35ms       ]
                     |                 |
                    5ms                |
                                     40ms
"""

from typing import Callable, List, Optional, Sequence, Tuple

from .stat import Field, format_duration

Emphasize = Callable[[str, str], str]

MUTED = "muted"
GOOD  = "good"
BAD   = "bad"

BAR_GLYPH = "█"
NAME_COLUMN = 21
COST_COLUMN = 15


def _plain(text: str, tone: str) -> str:
    return text


def split_space(count: int) -> Tuple[int, int]:
    """Split padding around centered text; an odd extra space goes right."""
    half = count // 2
    return half, count - half


def render_waterfall(fields: Sequence[Field],
                     emphasize: Optional[Emphasize] = None) -> str:
    """
    Header row, cost row, then one marker row per field plus a final row
    holding the last cumulative total.
    """
    if not fields:
        return ""
    paint = emphasize or _plain
    start = fields[0].start
    lines: List[List[str]] = [[] for _ in range(len(fields) + 3)]

    def put(row: int, text: str, tone: Optional[str] = None):
        lines[row].append(paint(text, tone) if tone else text)

    total = ""
    offset = 0
    position = 0
    for i, f in enumerate(fields):
        # header
        put(0, "  ")
        put(0, f.name, MUTED)
        put(0, " ")

        # cost, never truncated: widen the header instead
        cost = format_duration(f.cost)
        space = f.width - len(f.open_glyph) - len(cost)
        if space < 0:
            put(0, " " * -space)
            space = 0
        pre, post = split_space(space)
        put(1, f.open_glyph + " " * pre)
        put(1, cost, GOOD)
        put(1, " " * post + f.close_glyph)

        # cumulative markers
        offset += f.width
        for j in range(i + 1):
            if j == i:
                put(2 + j, " " * (offset - position - len(total)) + "|")
                total = format_duration(f.finished_at - start)
                position = offset - len(total) // 2
                put(3 + j, " " * position)
                put(3 + j, total, GOOD)
            else:
                put(2 + j, " " * (f.width - 1) + "|")

    return "".join("".join(line) + "\n" for line in lines)


def render_bars(fields: Sequence[Field],
                emphasize: Optional[Emphasize] = None) -> str:
    """
    One bar per field, scaled to its share of the total. A bar above its
    fair share (100 / number of fields) is flagged.
    """
    if not fields:
        return ""
    paint = emphasize or _plain
    total = sum(f.cost for f in fields)
    fair = 100 // len(fields)
    out = []
    for f in fields:
        percent = int(f.cost * 100 / total) if total > 0 else 0
        bar = BAR_GLYPH * percent
        tone = BAD if percent > fair else GOOD
        label = f"{f.name:<{NAME_COLUMN}}  {format_duration(f.cost):>{COST_COLUMN}}\t"
        out.append(label + (paint(bar, tone) if bar else bar) + "\n")
    return "".join(out)
