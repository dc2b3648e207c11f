# controller/setpoint.py
import threading
from typing import Optional


class SetpointChannel:
    """
    Single-slot mailbox: one writer (console thread), one reader (control loop).
    Not a queue. A second write before the loop takes the first one replaces it.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._value = 0.0
        self._pending = False

    def write(self, value: float) -> None:
        with self._lock:
            self._value = float(value)
            self._pending = True

    def take_if_ready(self) -> Optional[float]:
        """Return the latest value and clear the slot, or None if nothing is pending."""
        with self._lock:
            if not self._pending:
                return None
            self._pending = False
            return self._value

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending
