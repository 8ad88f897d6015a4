"""
Pipeline orchestration.

Runs the phases of a tiltstack run in order and reports each one through the
JSON event stream:

    Phase 0: SCAN_INPUT
    Phase 1: SEGMENTATION
    Phase 2: ORDERING
    Phase 3: ASSEMBLY
    Phase 4: STRETCH
    Phase 5: AVERAGING
    Phase 6: WRITE_OUTPUTS
    Phase 7: DONE

Workflow 'reorder' runs phases 0-3, 'enhance' phases 0 and 4-5 on an already
ordered stack, 'full' runs everything with the reordered stack feeding the
enhancement. Results stay in memory until WRITE_OUTPUTS, which writes to
temporary names and renames into place, so a failed run leaves no output
that looks complete.
"""

import json
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Optional

from tiltstack_backend.assembly import assemble_stack
from tiltstack_backend.averaging import (
    average_sweep,
    infer_sweep_geometry,
    merge_sweeps,
    single_sweep,
    split_bidirectional,
    sweep_stretch_set,
)
from tiltstack_backend.capabilities import ArrayCapabilities, ImagingCapabilities
from tiltstack_backend.configuration import (
    get_correction_config,
    get_enhancement_config,
    get_pipeline_config,
    get_segmentation_config,
    resolve_input_paths,
)
from tiltstack_backend.errors import (
    InputValidationError,
    PipelineCancelledError,
    TiltStackError,
)
from tiltstack_backend.ordering import reconstruct_order
from tiltstack_backend.records import (
    Frame,
    frames_from_stats,
    read_angle_file,
    read_frame_stats,
    read_kept_frames,
    write_angle_file,
)
from tiltstack_backend.segments import extract_segments
from tiltstack_backend.stack_io import is_stack_path, read_stack, write_stack
from tiltstack_backend.stretch import write_stretch_file

from .events import EventStream
from .tool_capabilities import CommandCapabilities

logger = logging.getLogger(__name__)

PHASES = [
    (0, "SCAN_INPUT"),
    (1, "SEGMENTATION"),
    (2, "ORDERING"),
    (3, "ASSEMBLY"),
    (4, "STRETCH"),
    (5, "AVERAGING"),
    (6, "WRITE_OUTPUTS"),
    (7, "DONE"),
]

_PHASES_BY_WORKFLOW = {
    "reorder": {0, 1, 2, 3, 6, 7},
    "enhance": {0, 4, 5, 6, 7},
    "full": {0, 1, 2, 3, 4, 5, 6, 7},
}


def make_capabilities(cfg: dict[str, Any], run_dir: Path) -> ImagingCapabilities:
    corr = get_correction_config(cfg)
    if corr["engine"] == "command":
        return CommandCapabilities(
            command=corr["command"],
            work_dir=run_dir / "work",
            artifacts_dir=run_dir / "artifacts",
            timeout_s=corr["timeout_s"],
        )
    return ArrayCapabilities()


def _require(paths: dict[str, Optional[Path]], key: str) -> Path:
    p = paths.get(key)
    if p is None:
        raise InputValidationError(f"input.{key} is not configured")
    if not p.exists() or not p.is_file():
        raise InputValidationError(f"input.{key} not found: {p}")
    return p


def _require_stack(paths: dict[str, Optional[Path]], key: str) -> Path:
    p = _require(paths, key)
    if not is_stack_path(p):
        raise InputValidationError(f"input.{key} is not a FITS stack: {p}")
    return p


def _write_outputs(outputs_dir: Path, files: dict[str, Any]) -> list[str]:
    """Write every output under a temporary name first, then rename all."""
    outputs_dir.mkdir(parents=True, exist_ok=True)
    staged: list[tuple[Path, Path]] = []
    try:
        for name, (kind, payload) in files.items():
            final = outputs_dir / name
            tmp = outputs_dir / f".{name}.partial{final.suffix}"
            if kind == "stack":
                write_stack(tmp, payload)
            elif kind == "angles":
                write_angle_file(tmp, payload)
            elif kind == "stretch":
                write_stretch_file(tmp, payload)
            else:
                raise ValueError(f"unknown output kind: {kind}")
            staged.append((tmp, final))
    except BaseException:
        for tmp, _ in staged:
            tmp.unlink(missing_ok=True)
        raise

    for tmp, final in staged:
        os.replace(tmp, final)
    return [str(final) for _, final in staged]


class _PhaseRunner:
    def __init__(self, events: EventStream, dry_run: bool, workflow: str, stop_event: Optional[threading.Event]):
        self.events = events
        self.dry_run = dry_run
        self.enabled = _PHASES_BY_WORKFLOW[workflow]
        self.stop_event = stop_event
        self.current: tuple[int, str] = PHASES[0]

    def skip(self, phase_id: int, phase_name: str) -> None:
        self.events.phase_end(phase_id, phase_name, "skipped", {"reason": "workflow"})

    def start(self, phase_id: int, phase_name: str) -> bool:
        """Start a phase; False if it is disabled for the workflow."""
        if phase_id not in self.enabled:
            self.skip(phase_id, phase_name)
            return False
        self.current = (phase_id, phase_name)
        if self.events.stop_requested(phase_id, phase_name, self.stop_event):
            raise PipelineCancelledError(f"stop requested before {phase_name}")
        self.events.phase_start(phase_id, phase_name)
        return True

    def end(self, extra: Optional[dict[str, Any]] = None) -> None:
        phase_id, phase_name = self.current
        payload = dict(extra or {})
        if self.dry_run:
            payload["dry_run"] = True
        self.events.phase_end(phase_id, phase_name, "ok", payload)

    def progress(self, current: int, total: int, extra: Optional[dict[str, Any]] = None) -> None:
        phase_id, phase_name = self.current
        self.events.phase_progress(phase_id, phase_name, current, total, extra)


def run_phases(
    events: EventStream,
    dry_run: bool,
    run_dir: Path,
    input_dir: Path,
    cfg: dict[str, Any],
    capabilities: Optional[ImagingCapabilities] = None,
    stop_event: Optional[threading.Event] = None,
) -> bool:
    """
    Run the tiltstack pipeline phases.

    Args:
        events: Event stream of the run
        dry_run: If True, only validate inputs and emit phase events
        run_dir: Run directory for outputs/artifacts/work
        input_dir: Base directory for relative input paths
        cfg: Validated configuration dictionary
        capabilities: Imaging capabilities (default: built from cfg)
        stop_event: Cooperative cancellation flag

    Returns:
        True if the pipeline completed successfully, False otherwise
    """
    pipeline_cfg = get_pipeline_config(cfg)
    workflow = pipeline_cfg["workflow"]
    runner = _PhaseRunner(events, dry_run, workflow, stop_event)

    try:
        return _run(runner, run_dir, input_dir, cfg, pipeline_cfg, capabilities, stop_event)
    except PipelineCancelledError as e:
        phase_id, phase_name = runner.current
        events.phase_end(phase_id, phase_name, "stopped", {"error": str(e)})
        return False
    except TiltStackError as e:
        phase_id, phase_name = runner.current
        extra: dict[str, Any] = {"error": str(e), "error_type": type(e).__name__}
        for attr in ("stage", "expected", "actual"):
            if hasattr(e, attr):
                extra[attr] = getattr(e, attr)
        if getattr(e, "meta", None):
            extra["tool"] = {k: v for k, v in e.meta.items() if k != "cmd"}
        events.phase_end(phase_id, phase_name, "error", extra)
        logger.error(f"Run {events.run_id} failed in {phase_name}: {e}")
        return False


def _run(
    runner: _PhaseRunner,
    run_dir: Path,
    input_dir: Path,
    cfg: dict[str, Any],
    pipeline_cfg: dict[str, Any],
    capabilities: Optional[ImagingCapabilities],
    stop_event: Optional[threading.Event],
) -> bool:
    workflow = pipeline_cfg["workflow"]
    seg_cfg = get_segmentation_config(cfg)
    enh_cfg = get_enhancement_config(cfg) if workflow in ("enhance", "full") else None
    paths = resolve_input_paths(cfg, input_dir)
    artifacts_dir = run_dir / "artifacts"
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    # Phase 0: SCAN_INPUT
    runner.start(0, "SCAN_INPUT")
    raw_stack = None
    stats: Optional[list[tuple[int, float]]] = None
    kept: Optional[list[int]] = None
    angles: list[float] = []
    if workflow in ("reorder", "full"):
        raw_path = _require_stack(paths, "raw_stack")
        angles = read_angle_file(_require(paths, "angles"))
        if seg_cfg["mode"] == "kept_list":
            kept = read_kept_frames(_require(paths, "kept_frames"))
        else:
            stats = read_frame_stats(_require(paths, "frame_stats"))
        raw_stack, _ = read_stack(raw_path)
        scan_extra = {"raw_frames": int(len(raw_stack)), "angles": len(angles)}
    else:
        raw_stack, _ = read_stack(_require_stack(paths, "ordered_stack"))
        angles = read_angle_file(_require(paths, "ordered_angles"))
        if len(angles) != len(raw_stack):
            raise InputValidationError(
                f"ordered stack has {len(raw_stack)} frames but angle file has {len(angles)} angles"
            )
        scan_extra = {"ordered_frames": int(len(raw_stack)), "angles": len(angles)}
    if kept is not None:
        beyond = [i for i in kept if i > len(raw_stack)]
        if beyond:
            raise InputValidationError(f"kept frame indices beyond raw stack of {len(raw_stack)} frames: {beyond[:10]}")
    if stats is not None and stats and stats[-1][0] > len(raw_stack):
        raise InputValidationError(f"frame statistics reference frame {stats[-1][0]} beyond raw stack of {len(raw_stack)} frames")
    runner.end(scan_extra)

    if runner.dry_run:
        for phase_id, phase_name in PHASES[1:]:
            if runner.start(phase_id, phase_name):
                runner.end()
        return True

    outputs: dict[str, Any] = {}
    stack = raw_stack
    ordered_angles = angles

    # Phase 1: SEGMENTATION
    segments = []
    if runner.start(1, "SEGMENTATION"):
        if seg_cfg["mode"] == "threshold":
            frames = frames_from_stats(stats)
        else:
            # kept-list mode classifies every raw frame
            frames = [Frame(index=i, intensity_stat=0.0) for i in range(1, len(raw_stack) + 1)]
        segments = extract_segments(
            frames,
            kept_indices=kept if seg_cfg["mode"] == "kept_list" else None,
            threshold=seg_cfg["threshold"] if seg_cfg["mode"] == "threshold" else None,
            min_segment_length=seg_cfg["min_segment_length"],
            trim_edges=seg_cfg["trim_edges"],
            epsilon=seg_cfg["epsilon"],
        )
        runner.end({"segments": len(segments), "mode": seg_cfg["mode"]})

    # Phase 2: ORDERING
    order = []
    if runner.start(2, "ORDERING"):
        order = reconstruct_order(segments, angles)
        manifest = [e.to_dict() for e in order]
        (artifacts_dir / "order.json").write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")
        runner.end({
            "entries": len(order),
            "segments": len(segments),
            "angles": len(angles),
            "truncated": len(segments) != len(angles),
        })

    # Phase 3: ASSEMBLY
    caps = capabilities if capabilities is not None else make_capabilities(cfg, run_dir)
    if runner.start(3, "ASSEMBLY"):
        assembled = assemble_stack(
            order,
            raw_stack,
            caps,
            cancel_event=stop_event,
            progress=lambda done, total: runner.progress(done, total),
        )
        stack = assembled.stack
        ordered_angles = assembled.angles
        outputs["ordered_stack.fits"] = ("stack", stack)
        outputs["ordered.tlt"] = ("angles", ordered_angles)
        runner.end({"frames": len(ordered_angles)})

    # Phase 4: STRETCH
    sweeps = []
    stretch_sets = []
    if runner.start(4, "STRETCH"):
        first_angle, increment = infer_sweep_geometry(ordered_angles)
        if enh_cfg["first_angle"] is not None:
            first_angle = enh_cfg["first_angle"]
        if enh_cfg["increment"] is not None:
            increment = enh_cfg["increment"]

        if enh_cfg["bidirectional"]:
            sweeps = split_bidirectional(
                ordered_angles,
                starting_angle=enh_cfg["starting_angle"],
                increment=increment,
                axis_rotation=enh_cfg["axis_rotation"],
                reverse_axis_rotation=enh_cfg["reverse_axis_rotation"],
            )
        else:
            sweeps = [single_sweep(len(ordered_angles), first_angle, increment, enh_cfg["axis_rotation"])]

        stretch_sets = [sweep_stretch_set(s, enh_cfg["thickness"]) for s in sweeps]
        if len(sweeps) == 1:
            outputs["stretch.xf"] = ("stretch", stretch_sets[0])
        else:
            for s, ss in zip(sweeps, stretch_sets):
                outputs[f"stretch_{s.direction.value}.xf"] = ("stretch", ss)
        runner.end({
            "sweeps": [
                {"direction": s.direction.value, "frames": s.n, "first_angle": s.first_angle, "increment": s.increment}
                for s in sweeps
            ],
            "thickness": enh_cfg["thickness"],
        })

    # Phase 5: AVERAGING
    if runner.start(5, "AVERAGING"):
        def run_sweep(item):
            sweep, ss = item
            return average_sweep(
                stack,
                sweep,
                enh_cfg["thickness"],
                caps,
                max_workers=pipeline_cfg["max_workers"],
                cancel_event=stop_event,
                progress=lambda done, total: runner.progress(done, total, {"sweep": sweep.direction.value}),
                stretch_set=ss,
            )

        items = list(zip(sweeps, stretch_sets))
        if len(items) > 1:
            with ThreadPoolExecutor(max_workers=len(items), thread_name_prefix="tiltstack-sweep") as exe:
                results = list(exe.map(run_sweep, items))
            enhanced, enhanced_angles = merge_sweeps(results, caps)
        else:
            results = [run_sweep(items[0])]
            enhanced, enhanced_angles = results[0].stack, results[0].angles

        outputs["enhanced_stack.fits"] = ("stack", enhanced)
        outputs["enhanced.tlt"] = ("angles", enhanced_angles)
        runner.end({"frames": len(enhanced_angles), "sweeps": len(results)})

    # Phase 6: WRITE_OUTPUTS
    runner.start(6, "WRITE_OUTPUTS")
    written = _write_outputs(run_dir / "outputs", outputs)
    runner.end({"outputs": written})

    runner.start(7, "DONE")
    runner.end()
    return True
