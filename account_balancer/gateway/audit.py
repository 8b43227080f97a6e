from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Lock, Thread
from typing import Any, TextIO

DROPPED_RECORDS_EVENT = "audit_records_dropped"


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlAuditLogger:
    """Appends balancer events to a JSON-lines file from a background thread.

    Emitting never blocks the event loop. Events go through a bounded queue and
    are dropped when the writer falls behind; each time the writer catches up
    it appends one ``audit_records_dropped`` line for the events it lost, and
    ``dropped_records`` keeps the running total for ``/metrics``.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._dropped_total = 0
        self._dropped_unreported = 0
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max(1, int(max_queue_size)))
            self._worker = Thread(
                target=self._write_loop, name="balancer-audit-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_total

    def emit(self, event: str, fields: dict[str, Any]) -> None:
        queue = self._queue
        if queue is None:
            return
        line = _encode({"ts": round(time.time(), 3), "event": event, **fields})
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_total += 1
                self._dropped_unreported += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)
        self._queue = None
        self._worker = None

    def _take_unreported(self) -> int:
        with self._lock:
            dropped = self._dropped_unreported
            self._dropped_unreported = 0
        return dropped

    def _report_drops(self, handle: TextIO) -> None:
        dropped = self._take_unreported()
        if dropped <= 0:
            return
        handle.write(
            _encode(
                {
                    "ts": round(time.time(), 3),
                    "event": DROPPED_RECORDS_EVENT,
                    "dropped_count": dropped,
                }
            )
            + "\n"
        )
        handle.flush()

    def _write_loop(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                try:
                    item = queue.get(timeout=0.5)
                except Empty:
                    self._report_drops(handle)
                    continue
                if item is None:
                    break
                handle.write(item + "\n")
                handle.flush()
                if queue.empty():
                    self._report_drops(handle)
            self._report_drops(handle)
