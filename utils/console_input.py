# utils/console_input.py
import logging
import math
import sys
import threading
from typing import Optional, TextIO

from controller.setpoint import SetpointChannel
from utils.console_print import print_console

# consecutive undecodable reads before the reader gives up on the stream
MAX_BAD_READS = 5


def parse_setpoint(line: str) -> Optional[float]:
    """Decimal real -> float; None for anything else (including nan/inf)."""
    try:
        value = float(line)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


class ConsoleInput(threading.Thread):
    """
    Reads setpoints from the console, one per line, and drops them into the channel.

    Runs as a daemon: a blocking readline cannot be interrupted portably, so the
    thread is simply left behind when the process exits.
    """
    def __init__(self, channel: SetpointChannel, stream: Optional[TextIO] = None):
        super().__init__(daemon=True, name="console-input")
        self.channel = channel
        self.stream = stream if stream is not None else sys.stdin
        if hasattr(self.stream, "reconfigure"):
            # bad bytes become U+FFFD and are rejected as text
            self.stream.reconfigure(errors="replace")
        self.accepted = 0
        self.rejected = 0

    def handle_line(self, line: str) -> Optional[float]:
        text = line.strip()
        if not text:
            return None
        value = parse_setpoint(text)
        if value is None:
            self.rejected += 1
            print_console(f"[INPUT] not a number: {text!r}; setpoint unchanged",
                          channel="input", level=logging.WARNING)
            return None
        self.channel.write(value)
        self.accepted += 1
        return value

    def _readline(self) -> Optional[str]:
        """One line from the stream, or None if its bytes did not decode."""
        try:
            return self.stream.readline()
        except UnicodeDecodeError as e:
            self.rejected += 1
            print_console(f"[INPUT] undecodable input ({e.reason}); setpoint unchanged",
                          channel="input", level=logging.WARNING)
            return None

    def run(self):
        bad_reads = 0
        while bad_reads < MAX_BAD_READS:
            line = self._readline()
            if line is None:
                bad_reads += 1
                continue
            if line == "":
                break
            bad_reads = 0
            self.handle_line(line)
        print_console("[INPUT] console closed; setpoint is now fixed", channel="input")
