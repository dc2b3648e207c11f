# io_worker.py
"""
Cycle trace plumbing: the control loop hands one frame per cycle to a FrameBus,
a TraceWriter thread turns the frames into ';'-separated CSV files.
"""
import csv
import logging
import os
import queue
import threading
import time
from typing import Any, Dict, List, Sequence

log = logging.getLogger(__name__)

# column order of every trace file
TRACE_FIELDS = ("cycle", "t", "setpoint", "measurement", "control_signal", "command", "missed_ticks")


class FrameBus:
    """
    Bounded hand-off between the loop and the trace writer.
    publish() never blocks: when the writer falls behind, the oldest frame is
    discarded and counted in `dropped`.
    """
    def __init__(self, maxsize: int = 10000):
        self._q: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, frame: Dict[str, Any]) -> None:
        while True:
            try:
                self._q.put_nowait(frame)
                return
            except queue.Full:
                pass
            try:
                self._q.get_nowait()
                self.dropped += 1
            except queue.Empty:
                # writer emptied it in between
                continue

    def get_queue(self) -> queue.Queue:
        return self._q


class TraceWriter(threading.Thread):
    """
    Daemon thread writing frames as CSV rows in `fields` order.
    Keys missing from a frame give empty cells, extra keys are ignored.
    A new file (with its own header) is started once the current one passes `rotate_mb`.
    """
    def __init__(self, q: queue.Queue, out_path: str, fields: Sequence[str] = TRACE_FIELDS,
                 rotate_mb: float = 100.0, flush_every: int = 200):
        super().__init__(daemon=True, name="trace-writer")
        self.q = q
        self.fields = tuple(fields)
        self.rotate_bytes = int(rotate_mb * 1024 * 1024)
        self.flush_every = max(1, int(flush_every))
        self.rows = 0
        self.paths: List[str] = []
        self._prefix = out_path
        self._done = threading.Event()
        self._fh = None
        self._csv = None
        parent = os.path.dirname(out_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._start_file()

    @property
    def path(self) -> str:
        return self.paths[-1]

    def stop(self) -> None:
        """Finish the frames already queued, then close the file."""
        self._done.set()

    def _start_file(self) -> None:
        self._finish_file()
        path = f"{self._prefix}_{time.strftime('%Y%m%d-%H%M%S')}_{len(self.paths):03d}.csv"
        self._fh = open(path, "wt", newline="")
        self._csv = csv.writer(self._fh, delimiter=";")
        self._csv.writerow(self.fields)
        self.paths.append(path)
        log.info("trace -> %s", path)

    def _finish_file(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.close()
        except OSError as e:
            log.warning("closing %s failed: %s", self.path, e)
        self._fh = None

    def write(self, frame: Dict[str, Any]) -> None:
        self._csv.writerow([frame.get(name, "") for name in self.fields])
        self.rows += 1
        if self.rows % self.flush_every:
            return
        self._fh.flush()
        if self._fh.tell() >= self.rotate_bytes:
            self._start_file()

    def run(self):
        try:
            while not (self._done.is_set() and self.q.empty()):
                try:
                    self.write(self.q.get(timeout=0.25))
                except queue.Empty:
                    pass
        finally:
            self._finish_file()
