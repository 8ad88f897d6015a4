"""
tiltstack backend CLI

Command-line interface for backend operations:
- Config validation and schema output
- Segment extraction and order reconstruction previews
- Stretch transform generation
- Run log retrieval

All commands output JSON.

Usage:
    python tiltstack_backend_cli.py <command> [args]
"""

import argparse
import json
import sys
from pathlib import Path

from tiltstack_backend.configuration import load_config_text
from tiltstack_backend.errors import InputValidationError, TiltStackError
from tiltstack_backend.logs import get_run_logs
from tiltstack_backend.ordering import reconstruct_order
from tiltstack_backend.records import Frame, frames_from_stats, read_angle_file, read_frame_stats, read_kept_frames
from tiltstack_backend.segments import extract_segments
from tiltstack_backend.stretch import generate_stretch_set, stretch_summary, write_stretch_file
from tiltstack_backend.validate import load_schema_json, validate_config_yaml_text


def _print_json(obj: object) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False, indent=2))
    sys.stdout.write("\n")
    sys.stdout.flush()


def _fail(cmd: str, err: TiltStackError) -> int:
    _print_json({"ok": False, "command": cmd, "error": str(err), "error_type": type(err).__name__})
    return 1


def cmd_get_schema(_: argparse.Namespace) -> int:
    _print_json(load_schema_json())
    return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
    if args.path is not None:
        yaml_text = load_config_text(Path(args.path))
    elif args.stdin:
        yaml_text = sys.stdin.read()
    else:
        yaml_text = args.yaml

    result = validate_config_yaml_text(yaml_text=yaml_text, schema_path=args.schema)
    if args.path is not None:
        result["path"] = args.path
    _print_json(result)
    if args.strict_exit_codes:
        return 0 if result.get("valid") else 1
    return 0


def _segments_from_args(args: argparse.Namespace):
    if args.kept_frames:
        kept = read_kept_frames(Path(args.kept_frames))
        if args.frame_stats:
            frames = frames_from_stats(read_frame_stats(Path(args.frame_stats)))
        else:
            frames = [Frame(index=i, intensity_stat=0.0) for i in range(1, max(kept, default=0) + 1)]
        return extract_segments(
            frames,
            kept_indices=kept,
            min_segment_length=args.min_segment_length,
            trim_edges=args.trim_edges,
        )
    if not args.frame_stats:
        raise InputValidationError("--threshold requires --frame-stats")
    frames = frames_from_stats(read_frame_stats(Path(args.frame_stats)))
    return extract_segments(
        frames,
        threshold=args.threshold,
        min_segment_length=args.min_segment_length,
        epsilon=args.epsilon,
    )


def cmd_segments(args: argparse.Namespace) -> int:
    try:
        segments = _segments_from_args(args)
    except TiltStackError as e:
        return _fail("segments", e)
    _print_json({
        "ok": True,
        "segments": [{"start_index": s.start_index, "end_index": s.end_index, "length": s.length} for s in segments],
    })
    return 0


def cmd_order(args: argparse.Namespace) -> int:
    try:
        segments = _segments_from_args(args)
        angles = read_angle_file(Path(args.angles))
        order = reconstruct_order(segments, angles)
    except TiltStackError as e:
        return _fail("order", e)
    _print_json({
        "ok": True,
        "segments": len(segments),
        "angles": len(angles),
        "truncated": len(segments) != len(angles),
        "order": [e.to_dict() for e in order],
    })
    return 0


def cmd_stretch(args: argparse.Namespace) -> int:
    try:
        stretch_set = generate_stretch_set(
            n=args.frames,
            axis_rotation=args.axis_rotation,
            first_angle=args.first_angle,
            increment=args.increment,
            thickness=args.thickness,
        )
    except TiltStackError as e:
        return _fail("stretch", e)
    out = {"ok": True, "references": list(stretch_summary(stretch_set))}
    if args.output:
        out["output"] = str(write_stretch_file(Path(args.output), stretch_set))
    _print_json(out)
    return 0


def cmd_get_run_logs(args: argparse.Namespace) -> int:
    _print_json(get_run_logs(args.run_dir, tail=args.tail))
    return 0


def _add_segment_args(p: argparse.ArgumentParser) -> None:
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--kept-frames", default=None, help="Kept-frame index list (incremental acquisition)")
    src.add_argument("--threshold", type=float, default=None, help="Intensity threshold (blank-frame mode)")
    p.add_argument("--frame-stats", default=None, help="Per-frame 'index stat' records")
    p.add_argument("--min-segment-length", type=int, default=3)
    p.add_argument("--trim-edges", action="store_true")
    p.add_argument("--epsilon", type=float, default=1e-6)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tiltstack_backend_cli")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_schema = sub.add_parser("get-schema")
    p_schema.set_defaults(func=cmd_get_schema)

    p_validate = sub.add_parser("validate-config")
    src = p_validate.add_mutually_exclusive_group(required=True)
    src.add_argument("--path")
    src.add_argument("--yaml")
    src.add_argument("--stdin", action="store_true")
    p_validate.add_argument(
        "--schema",
        default=None,
        help="Optional path to a schema file (defaults to the bundled tiltstack.schema.json)",
    )
    p_validate.add_argument(
        "--strict-exit-codes",
        action="store_true",
        help="Return exit code 1 when validation fails. Default: always 0 and rely on JSON result.",
    )
    p_validate.set_defaults(func=cmd_validate_config)

    p_seg = sub.add_parser("segments")
    _add_segment_args(p_seg)
    p_seg.set_defaults(func=cmd_segments)

    p_order = sub.add_parser("order")
    _add_segment_args(p_order)
    p_order.add_argument("--angles", required=True, help="Angle file, one angle per acquisition position")
    p_order.set_defaults(func=cmd_order)

    p_stretch = sub.add_parser("stretch")
    p_stretch.add_argument("--frames", type=int, required=True)
    p_stretch.add_argument("--first-angle", type=float, required=True)
    p_stretch.add_argument("--increment", type=float, required=True)
    p_stretch.add_argument("--axis-rotation", type=float, default=0.0)
    p_stretch.add_argument("--thickness", type=int, default=5)
    p_stretch.add_argument("--output", default=None, help="Write the stretch transform file here")
    p_stretch.set_defaults(func=cmd_stretch)

    p_logs = sub.add_parser("get-run-logs")
    p_logs.add_argument("run_dir")
    p_logs.add_argument("--tail", type=int, default=None)
    p_logs.set_defaults(func=cmd_get_run_logs)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
