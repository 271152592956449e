from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

logger = logging.getLogger("uvicorn.error")


class JsonlAuditLogger:
    """Appends pool transitions and request outcomes to a JSON-lines file.

    Writes happen on a daemon thread; ``record`` never blocks the event loop.
    When the queue is full the record is dropped and counted, and a summary
    line is written on close.
    """

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._dropped = 0
        self._queue: Queue[str | None] | None = None
        self._writer: Thread | None = None
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._queue = Queue(maxsize=max(1, max_queue_size))
        self._writer = Thread(target=self._run, name="relay-audit-writer", daemon=True)
        self._writer.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped

    def record(self, event: str, fields: dict[str, Any]) -> None:
        if self._queue is None:
            return
        line = _encode({"ts": round(time.time(), 3), "event": event, **fields})
        try:
            self._queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped += 1

    def close(self) -> None:
        if self._queue is None or self._writer is None:
            return
        self._queue.put(None)
        self._writer.join(timeout=2.0)
        self._queue = None
        self._writer = None

    def _run(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                line = queue.get()
                if line is None:
                    break
                handle.write(line + "\n")
                handle.flush()
            with self._lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                logger.warning("audit_records_dropped count=%d", dropped)
                handle.write(
                    _encode(
                        {
                            "ts": round(time.time(), 3),
                            "event": "audit_records_dropped",
                            "count": dropped,
                        }
                    )
                    + "\n"
                )


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
