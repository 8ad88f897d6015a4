#!/usr/bin/env python3
"""
tiltstack runner - entry point

Creates a run directory, records the configuration and input manifest, and
executes the pipeline phases (see runner/phases.py). All progress is reported
as JSON lines on stdout and in <run_dir>/logs/run_events.jsonl.

Usage:
    python tiltstack_runner.py run --config tiltstack.yaml --input-dir data/
"""

import argparse
import hashlib
import json
import logging
import shutil
import signal
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from runner.events import EventStream, json_dumps_canonical, now_iso
from runner.logging_config import setup_logging
from runner.phases import run_phases
from tiltstack_backend.configuration import load_config_text, parse_config, resolve_input_paths
from tiltstack_backend.errors import TiltStackError

_STOP = threading.Event()


def _handle_signal(_signum, _frame):
    _STOP.set()


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def cmd_run(args) -> int:
    config_path = Path(args.config).expanduser().resolve()
    input_dir = Path(args.input_dir).expanduser().resolve()
    runs_dir = Path(args.runs_dir).expanduser().resolve()

    if not config_path.exists() or not config_path.is_file():
        sys.stderr.write(f"config not found: {config_path}\n")
        return 2

    if not input_dir.exists() or not input_dir.is_dir():
        sys.stderr.write(f"input_dir not found: {input_dir}\n")
        return 2

    run_id = str(uuid.uuid4())
    ts_compact = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    run_dir = runs_dir / f"{ts_compact}_{run_id}"

    run_dir.mkdir(parents=True, exist_ok=False)
    (run_dir / "logs").mkdir(parents=True, exist_ok=True)
    (run_dir / "artifacts").mkdir(parents=True, exist_ok=True)
    (run_dir / "outputs").mkdir(parents=True, exist_ok=True)

    setup_logging(log_level=logging.DEBUG if args.verbose else logging.INFO, log_dir=run_dir / "logs")

    run_metadata = {
        "run_id": run_id,
        "created_at": now_iso(),
        "dry_run": bool(args.dry_run),
    }
    (run_dir / "run_metadata.json").write_bytes(json_dumps_canonical(run_metadata))

    log_path = run_dir / "logs" / "run_events.jsonl"
    with log_path.open("w", encoding="utf-8") as log_fp:
        events = EventStream(run_id, log_fp)
        config_text = load_config_text(config_path)
        config_hash = _sha256_bytes(config_text.encode("utf-8"))
        shutil.copy2(config_path, run_dir / "config.yaml")
        (run_dir / "config_hash.txt").write_text(config_hash + "\n", encoding="utf-8")

        try:
            cfg = parse_config(config_text)
        except TiltStackError as e:
            events.emit("runner_error", {"error": str(e)})
            events.emit("run_end", {"status": "error"})
            return 1

        inputs = {k: (str(v) if v is not None else None) for k, v in resolve_input_paths(cfg, input_dir).items()}
        inputs_manifest = json_dumps_canonical({"input_dir": str(input_dir), "inputs": inputs})
        (run_dir / "inputs_manifest.json").write_bytes(inputs_manifest)

        events.emit(
            "run_start",
            {
                "paths": {
                    "run_dir": str(run_dir),
                    "runs_dir": str(runs_dir),
                    "config_path": str(config_path),
                    "input_dir": str(input_dir),
                },
                "config_hash": config_hash,
                "inputs_manifest_id": _sha256_bytes(inputs_manifest),
                "dry_run": bool(args.dry_run),
            },
        )

        try:
            ok = run_phases(
                events,
                dry_run=bool(args.dry_run),
                run_dir=run_dir,
                input_dir=input_dir,
                cfg=cfg,
                stop_event=_STOP,
            )
        except Exception:
            events.emit("run_end", {"status": "error"})
            raise

        status = "ok" if ok else ("stopped" if _STOP.is_set() else "error")
        events.emit("run_end", {"status": status})

    (run_dir / "run_status.json").write_text(json.dumps({"run_id": run_id, "status": status}) + "\n", encoding="utf-8")
    return 0 if ok else 1


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tiltstack_runner")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run")
    p_run.add_argument("--config", required=True)
    p_run.add_argument("--input-dir", required=True)
    p_run.add_argument("--runs-dir", default="runs")
    p_run.add_argument("--dry-run", action="store_true")
    p_run.add_argument("--verbose", action="store_true")
    p_run.set_defaults(func=cmd_run)

    return p


def main(argv=None) -> int:
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    parser = build_arg_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
