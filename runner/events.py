"""
Run event stream.

Each event is one canonical JSON line, echoed to stdout and appended to the
run's logs/run_events.jsonl. Averaging workers report progress through the
same stream from several threads, so writes are serialised.
"""

import json
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Optional, TextIO


def json_dumps_canonical(obj) -> bytes:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode("utf-8")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventStream:
    """Events of one run; every event carries type, run_id and ts."""

    def __init__(self, run_id: str, log_fp: Optional[TextIO] = None, echo: bool = True):
        self.run_id = run_id
        self.log_fp = log_fp
        self.echo = echo
        self._lock = threading.Lock()

    def emit(self, event_type: str, fields: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        ev: dict[str, Any] = {"type": event_type, "run_id": self.run_id, "ts": now_iso()}
        if fields:
            ev.update(fields)
        line = json_dumps_canonical(ev).decode("utf-8")
        with self._lock:
            if self.echo:
                sys.stdout.write(line + "\n")
                sys.stdout.flush()
            if self.log_fp is not None:
                self.log_fp.write(line + "\n")
                self.log_fp.flush()
        return ev

    def phase_start(self, phase_id: int, phase_name: str) -> None:
        self.emit("phase_start", {"phase": phase_id, "phase_name": phase_name})

    def phase_end(self, phase_id: int, phase_name: str, status: str, extra: Optional[dict[str, Any]] = None) -> None:
        fields = dict(extra or {})
        fields.update(phase=phase_id, phase_name=phase_name, status=status)
        self.emit("phase_end", fields)

    def phase_progress(
        self,
        phase_id: int,
        phase_name: str,
        current: int,
        total: int,
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        fields = dict(extra or {})
        fields.update(phase=phase_id, phase_name=phase_name, current=current, total=total)
        self.emit("phase_progress", fields)

    def stop_requested(self, phase_id: int, phase_name: str, stop_event: Optional[threading.Event]) -> bool:
        """True (and a run_stop_requested event) if the stop flag is set."""
        if stop_event is None or not stop_event.is_set():
            return False
        self.emit("run_stop_requested", {"phase": phase_id, "phase_name": phase_name})
        return True
