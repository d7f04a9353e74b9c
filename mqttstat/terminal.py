"""Terminal adapter: colour and cursor control for the report."""

import sys
from typing import Optional, TextIO


class C:
    GREEN = "\033[32m"
    RED   = "\033[31m"
    GREY  = "\033[0;37m"
    END   = "\033[0m"


TONES = {
    "good":  C.GREEN,
    "bad":   C.RED,
    "muted": C.GREY,
}


class Terminal:
    """
    Wraps an output stream. Colour is used only when the stream is a tty
    (or when forced); cursor control is a no-op otherwise.
    """

    def __init__(self, stream: Optional[TextIO] = None,
                 color: Optional[bool] = None):
        self.stream = stream or sys.stdout
        self._color = color

    def supports_color(self) -> bool:
        if self._color is not None:
            return self._color
        isatty = getattr(self.stream, "isatty", None)
        return bool(isatty and isatty())

    def emphasize(self, text: str, tone: str) -> str:
        code = TONES.get(tone)
        if not code or not self.supports_color():
            return text
        return f"{code}{text}{C.END}"

    def _control(self, seq: str):
        if self.supports_color():
            self.stream.write(seq)

    def cursor_home(self):
        self._control("\033[1;1H")

    def clear_screen(self):
        self._control("\033[2J")

    def hide_cursor(self):
        self._control("\033[?25l")

    def show_cursor(self):
        self._control("\033[?25h")
        self.stream.flush()

    def reset(self):
        """Redraw from the top of a cleared screen (``--inplace``)."""
        self.cursor_home()
        self.hide_cursor()
        self.clear_screen()
