from __future__ import annotations

import json
from collections import deque
from pathlib import Path
from typing import Any


def _parse_event(line: str) -> dict[str, Any] | None:
    try:
        ev = json.loads(line)
    except json.JSONDecodeError:
        return None
    return ev if isinstance(ev, dict) else None


def get_run_logs(run_dir: str, tail: int | None = None) -> dict[str, Any]:
    """Events of a run plus the last status of every phase.

    With tail=N only the last N events are returned; the phase summary always
    covers the whole log.
    """
    p = Path(run_dir).expanduser().resolve()
    log_path = p / "logs" / "run_events.jsonl"
    if not log_path.exists():
        return {"run_dir": str(p), "events": [], "phases": {}, "status": None}

    tail_n = int(tail) if tail is not None and tail > 0 else None
    lines: deque[str] = deque(maxlen=tail_n)
    phases: dict[str, str] = {}
    status = None

    with log_path.open("r", encoding="utf-8") as f:
        for line in f:
            s = line.strip()
            if not s:
                continue
            lines.append(s)
            if '"phase_end"' in s or '"run_end"' in s:
                ev = _parse_event(s)
                if ev is None:
                    continue
                if ev.get("type") == "phase_end" and isinstance(ev.get("phase_name"), str):
                    phases[ev["phase_name"]] = str(ev.get("status"))
                elif ev.get("type") == "run_end":
                    status = ev.get("status")

    events = [ev for ev in (_parse_event(s) for s in lines) if ev is not None]
    return {"run_dir": str(p), "events": events, "phases": phases, "status": status}
