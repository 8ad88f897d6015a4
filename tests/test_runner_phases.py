import io
import json
import threading
from pathlib import Path

import numpy as np
import yaml
from astropy.io import fits

import tiltstack_runner
from runner.events import EventStream
from runner.phases import run_phases
from tiltstack_backend.capabilities import ArrayCapabilities
from tiltstack_backend.logs import get_run_logs
from tiltstack_backend.transforms import AffineTransform2D


class _StubCapabilities(ArrayCapabilities):
    """Registration-free capabilities: correct() averages, alignment is identity."""

    def __init__(self, drop_alignment=False):
        super().__init__()
        self.drop_alignment = drop_alignment

    def correct(self, substack):
        return np.asarray(substack, dtype=np.float32).mean(axis=0)

    def align_pairwise(self, frames):
        out = [AffineTransform2D.identity() for _ in range(len(frames))]
        return out[:-1] if self.drop_alignment else out


def _write_stack(path: Path, values, shape=(16, 16)) -> None:
    data = np.stack([np.full(shape, float(v), dtype=np.float32) for v in values], axis=0)
    fits.writeto(str(path), data, overwrite=True)


def _parse_events(log_text: str) -> list[dict]:
    return [json.loads(line) for line in log_text.splitlines() if line.strip()]


def _phase_status(events: list[dict]) -> dict[str, str]:
    return {e["phase_name"]: e["status"] for e in events if e.get("type") == "phase_end"}


def _reorder_inputs(tmp_path: Path) -> Path:
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    # three 5-frame segments separated by blank frames
    values = [10] * 5 + [0] + [20] * 5 + [0] + [30] * 5 + [0]
    _write_stack(input_dir / "raw.fits", values)
    kept = [i for i, v in enumerate(values, start=1) if v > 0]
    (input_dir / "kept.txt").write_text("\n".join(str(i) for i in kept) + "\n", encoding="utf-8")
    (input_dir / "angles.tlt").write_text("0.0\n3.0\n-3.0\n", encoding="utf-8")
    return input_dir


def _full_cfg() -> dict:
    return {
        "pipeline": {"workflow": "full", "max_workers": 2},
        "input": {"raw_stack": "raw.fits", "kept_frames": "kept.txt", "angles": "angles.tlt"},
        "segmentation": {"mode": "kept_list"},
        "enhancement": {"thickness": 3, "axis_rotation": 0.0},
    }


def _run(tmp_path, cfg, input_dir, capabilities=None, dry_run=False, stop_event=None):
    run_dir = tmp_path / "run"
    run_dir.mkdir(exist_ok=True)
    log_fp = io.StringIO()
    ok = run_phases(
        EventStream("test", log_fp, echo=False),
        dry_run=dry_run,
        run_dir=run_dir,
        input_dir=input_dir,
        cfg=cfg,
        capabilities=capabilities,
        stop_event=stop_event,
    )
    return ok, run_dir, _parse_events(log_fp.getvalue())


def test_full_workflow_writes_all_outputs(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    ok, run_dir, events = _run(tmp_path, _full_cfg(), input_dir, capabilities=_StubCapabilities())
    assert ok is True

    statuses = _phase_status(events)
    assert all(s == "ok" for s in statuses.values()), statuses
    assert statuses.keys() >= {"SCAN_INPUT", "SEGMENTATION", "ORDERING", "ASSEMBLY", "STRETCH", "AVERAGING"}

    outputs = run_dir / "outputs"
    names = sorted(p.name for p in outputs.iterdir())
    assert names == ["enhanced.tlt", "enhanced_stack.fits", "ordered.tlt", "ordered_stack.fits", "stretch.xf"]

    ordered = fits.getdata(str(outputs / "ordered_stack.fits"))
    assert ordered.shape == (3, 16, 16)
    assert ordered[:, 0, 0].tolist() == [30.0, 10.0, 20.0]
    assert (outputs / "ordered.tlt").read_text(encoding="utf-8").splitlines() == ["-3.00", "0.00", "3.00"]

    enhanced = fits.getdata(str(outputs / "enhanced_stack.fits"))
    assert enhanced.shape == (3, 16, 16)
    assert np.allclose(enhanced[:, 8, 8], [20.0, 20.0, 15.0], atol=1e-3)

    order = json.loads((run_dir / "artifacts" / "order.json").read_text(encoding="utf-8"))
    assert [e["output_position"] for e in order] == [1, 2, 3]
    assert [e["start_index"] for e in order] == [13, 1, 7]

    stretch_lines = (outputs / "stretch.xf").read_text(encoding="utf-8").splitlines()
    assert len(stretch_lines) == 2 + 3 + 2


def test_alignment_mismatch_leaves_no_outputs(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    ok, run_dir, events = _run(tmp_path, _full_cfg(), input_dir, capabilities=_StubCapabilities(drop_alignment=True))
    assert ok is False

    errors = [e for e in events if e.get("type") == "phase_end" and e.get("status") == "error"]
    assert len(errors) == 1
    assert errors[0]["phase_name"] == "AVERAGING"
    assert errors[0]["error_type"] == "AlignmentCountMismatchError"
    assert errors[0]["stage"] == "AVERAGING"

    outputs = run_dir / "outputs"
    assert not outputs.exists() or list(outputs.iterdir()) == []


def test_dry_run_only_emits_events(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    ok, run_dir, events = _run(tmp_path, _full_cfg(), input_dir, capabilities=_StubCapabilities(), dry_run=True)
    assert ok is True
    ends = [e for e in events if e.get("type") == "phase_end"]
    assert [e["phase_name"] for e in ends][-1] == "DONE"
    assert all(e.get("dry_run") is True for e in ends)
    assert not (run_dir / "outputs").exists()


def test_reorder_workflow_skips_enhancement(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    cfg = _full_cfg()
    cfg["pipeline"]["workflow"] = "reorder"
    ok, run_dir, events = _run(tmp_path, cfg, input_dir, capabilities=_StubCapabilities())
    assert ok is True
    statuses = _phase_status(events)
    assert statuses["STRETCH"] == "skipped"
    assert statuses["AVERAGING"] == "skipped"
    assert sorted(p.name for p in (run_dir / "outputs").iterdir()) == ["ordered.tlt", "ordered_stack.fits"]


def test_enhance_workflow_bidirectional(tmp_path):
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    _write_stack(input_dir / "ordered.fits", [1, 2, 3, 4, 5, 6, 7])
    (input_dir / "ordered.tlt").write_text("\n".join(str(a) for a in (-9, -6, -3, 0, 3, 6, 9)) + "\n", encoding="utf-8")
    cfg = {
        "pipeline": {"workflow": "enhance", "max_workers": 1},
        "input": {"ordered_stack": "ordered.fits", "ordered_angles": "ordered.tlt"},
        "enhancement": {"thickness": 1, "bidirectional": True, "starting_angle": 0.0, "increment": 3.0},
    }
    ok, run_dir, events = _run(tmp_path, cfg, input_dir, capabilities=_StubCapabilities())
    assert ok is True

    outputs = run_dir / "outputs"
    assert (outputs / "stretch_forward.xf").exists()
    assert (outputs / "stretch_reverse.xf").exists()
    angles = [float(a) for a in (outputs / "enhanced.tlt").read_text(encoding="utf-8").split()]
    assert angles == [-9.0, -6.0, -3.0, 0.0, 3.0, 6.0, 9.0]
    enhanced = fits.getdata(str(outputs / "enhanced_stack.fits"))
    assert np.allclose(enhanced[:, 8, 8], [1, 2, 3, 4, 5, 6, 7], atol=1e-4)

    stretch = [e for e in events if e.get("type") == "phase_end" and e.get("phase_name") == "STRETCH"][0]
    assert [s["direction"] for s in stretch["sweeps"]] == ["forward", "reverse"]


def test_missing_input_is_reported(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    (input_dir / "angles.tlt").unlink()
    ok, _, events = _run(tmp_path, _full_cfg(), input_dir, capabilities=_StubCapabilities())
    assert ok is False
    statuses = _phase_status(events)
    assert statuses["SCAN_INPUT"] == "error"


def test_non_finite_kept_index_is_reported(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    (input_dir / "kept.txt").write_text("1\ninf\n", encoding="utf-8")
    ok, _, events = _run(tmp_path, _full_cfg(), input_dir, capabilities=_StubCapabilities())
    assert ok is False
    scan = [e for e in events if e.get("type") == "phase_end" and e["phase_name"] == "SCAN_INPUT"][0]
    assert scan["status"] == "error"
    assert scan["error_type"] == "InputValidationError"


def test_kept_list_ignores_partial_frame_stats(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    # stats only cover the first segment
    (input_dir / "stats.txt").write_text("".join(f"{i} 10.0\n" for i in range(1, 7)), encoding="utf-8")
    cfg = _full_cfg()
    cfg["pipeline"]["workflow"] = "reorder"
    cfg["input"]["frame_stats"] = "stats.txt"
    ok, run_dir, events = _run(tmp_path, cfg, input_dir, capabilities=_StubCapabilities())
    assert ok is True

    seg = [e for e in events if e.get("type") == "phase_end" and e["phase_name"] == "SEGMENTATION"][0]
    assert seg["segments"] == 3
    ordering = [e for e in events if e.get("type") == "phase_end" and e["phase_name"] == "ORDERING"][0]
    assert ordering["truncated"] is False
    ordered = fits.getdata(str(run_dir / "outputs" / "ordered_stack.fits"))
    assert ordered[:, 0, 0].tolist() == [30.0, 10.0, 20.0]


def test_stop_requested_before_start(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    stop = threading.Event()
    stop.set()
    ok, _, events = _run(tmp_path, _full_cfg(), input_dir, capabilities=_StubCapabilities(), stop_event=stop)
    assert ok is False
    assert any(e.get("type") == "run_stop_requested" for e in events)
    assert _phase_status(events)["SCAN_INPUT"] == "stopped"


def test_cmd_run_creates_run_directory(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    # textured frames so phase correlation has something to lock onto
    yy, xx = np.mgrid[0:16, 0:16].astype(np.float32)
    blob = np.exp(-((xx - 7.0) ** 2 + (yy - 9.0) ** 2) / 8.0).astype(np.float32)
    raw = fits.getdata(str(input_dir / "raw.fits")).astype(np.float32)
    fits.writeto(str(input_dir / "raw.fits"), raw * (1.0 + blob), overwrite=True)

    cfg = _full_cfg()
    cfg["pipeline"]["workflow"] = "reorder"
    config_path = tmp_path / "tiltstack.yaml"
    config_path.write_text(yaml.safe_dump(cfg), encoding="utf-8")

    args = tiltstack_runner.build_arg_parser().parse_args(
        ["run", "--config", str(config_path), "--input-dir", str(input_dir), "--runs-dir", str(tmp_path / "runs")]
    )
    rc = tiltstack_runner.cmd_run(args)
    assert rc == 0

    (run_dir,) = list((tmp_path / "runs").iterdir())
    assert (run_dir / "config.yaml").exists()
    assert (run_dir / "config_hash.txt").exists()
    assert json.loads((run_dir / "run_status.json").read_text(encoding="utf-8"))["status"] == "ok"
    events = _parse_events((run_dir / "logs" / "run_events.jsonl").read_text(encoding="utf-8"))
    assert events[0]["type"] == "run_start"
    assert (events[-1]["type"], events[-1]["status"]) == ("run_end", "ok")
    assert (run_dir / "outputs" / "ordered_stack.fits").exists()

    logs = get_run_logs(str(run_dir), tail=2)
    assert len(logs["events"]) == 2
    assert logs["status"] == "ok"
    assert logs["phases"]["ASSEMBLY"] == "ok"
    assert logs["phases"]["AVERAGING"] == "skipped"


def test_cmd_run_invalid_config(tmp_path):
    input_dir = _reorder_inputs(tmp_path)
    config_path = tmp_path / "bad.yaml"
    config_path.write_text("pipeline:\n  workflow: full\n", encoding="utf-8")
    args = tiltstack_runner.build_arg_parser().parse_args(
        ["run", "--config", str(config_path), "--input-dir", str(input_dir), "--runs-dir", str(tmp_path / "runs")]
    )
    assert tiltstack_runner.cmd_run(args) == 1
    (run_dir,) = list((tmp_path / "runs").iterdir())
    events = _parse_events((run_dir / "logs" / "run_events.jsonl").read_text(encoding="utf-8"))
    assert [e["type"] for e in events] == ["runner_error", "run_end"]
