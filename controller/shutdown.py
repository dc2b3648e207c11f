# controller/shutdown.py
import logging
import signal
import threading

log = logging.getLogger(__name__)


class ShutdownFlag:
    """Set once by the interrupt handler, polled by the control loop at the top of each cycle."""

    def __init__(self):
        self._evt = threading.Event()

    def set(self) -> None:
        self._evt.set()

    def is_set(self) -> bool:
        return self._evt.is_set()

    def install(self, signum: int = signal.SIGINT) -> None:
        """Route `signum` to this flag. Must be called from the main thread."""
        signal.signal(signum, self._handle)

    def _handle(self, signum, _frame) -> None:
        if self._evt.is_set():
            return
        self._evt.set()
        log.info("%s received, stopping after the current cycle", signal.Signals(signum).name)
