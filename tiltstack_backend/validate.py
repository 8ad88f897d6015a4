from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator


@dataclass
class ValidationIssue:
    severity: str  # "error" | "warning"
    code: str
    path: str
    message: str


def load_schema_json(schema_path: str | None = None) -> dict:
    if schema_path is None:
        schema_path = str(Path(__file__).resolve().parent / "tiltstack.schema.json")

    data = json.loads(Path(schema_path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("schema must be a JSON object")
    return data


def _json_path(parts: list[str | int]) -> str:
    out = "$"
    for p in parts:
        if isinstance(p, int):
            out += f"[{p}]"
        elif p.isidentifier():
            out += f".{p}"
        else:
            out += f"['{p}']"
    return out


def _result(issues: list[ValidationIssue]) -> dict:
    return {
        "valid": not any(i.severity == "error" for i in issues),
        "errors": [i.__dict__ for i in issues if i.severity == "error"],
        "warnings": [i.__dict__ for i in issues if i.severity == "warning"],
    }


def _section(cfg: dict, name: str) -> dict:
    v = cfg.get(name)
    return v if isinstance(v, dict) else {}


def validate_config(cfg: Any, schema_path: str | None = None) -> dict:
    issues: list[ValidationIssue] = []

    if not isinstance(cfg, dict):
        issues.append(
            ValidationIssue(
                severity="error",
                code="config_not_object",
                path="$",
                message="configuration root must be a mapping/object",
            )
        )
        return _result(issues)

    validator = Draft202012Validator(load_schema_json(schema_path))
    for err in sorted(validator.iter_errors(cfg), key=lambda e: list(e.path)):
        issues.append(
            ValidationIssue(
                severity="error",
                code="schema_validation_error",
                path=_json_path(list(err.path)),
                message=err.message,
            )
        )

    def error(code: str, path: str, message: str) -> None:
        issues.append(ValidationIssue(severity="error", code=code, path=path, message=message))

    def warning(code: str, path: str, message: str) -> None:
        issues.append(ValidationIssue(severity="warning", code=code, path=path, message=message))

    workflow = _section(cfg, "pipeline").get("workflow", "full")
    inp = _section(cfg, "input")
    seg = _section(cfg, "segmentation")
    corr = _section(cfg, "correction")
    enh = _section(cfg, "enhancement")

    if workflow in ("reorder", "full"):
        if not inp.get("raw_stack"):
            error("raw_stack_missing", "$.input.raw_stack", f"workflow '{workflow}' requires input.raw_stack")
        if not inp.get("angles"):
            error("angles_missing", "$.input.angles", f"workflow '{workflow}' requires input.angles")

        mode = seg.get("mode", "kept_list")
        if mode == "kept_list":
            if not inp.get("kept_frames"):
                error("kept_frames_missing", "$.input.kept_frames", "segmentation.mode 'kept_list' requires input.kept_frames")
            if inp.get("frame_stats"):
                warning("frame_stats_ignored", "$.input.frame_stats", "input.frame_stats only applies to threshold mode")
        elif mode == "threshold":
            if not isinstance(seg.get("threshold"), (int, float)) or isinstance(seg.get("threshold"), bool):
                error("threshold_missing", "$.segmentation.threshold", "segmentation.mode 'threshold' requires a numeric threshold")
            if not inp.get("frame_stats"):
                error("frame_stats_missing", "$.input.frame_stats", "segmentation.mode 'threshold' requires input.frame_stats")
            if seg.get("trim_edges"):
                warning("trim_edges_ignored", "$.segmentation.trim_edges", "trim_edges only applies to kept_list mode")

        if corr.get("engine") == "command" and not str(corr.get("command") or "").strip():
            error("correction_command_missing", "$.correction.command", "correction.engine 'command' requires correction.command")

    if workflow == "enhance" and not inp.get("ordered_stack"):
        error("ordered_stack_missing", "$.input.ordered_stack", "workflow 'enhance' requires input.ordered_stack")
    if workflow == "enhance" and not inp.get("ordered_angles"):
        error("ordered_angles_missing", "$.input.ordered_angles", "workflow 'enhance' requires input.ordered_angles")

    if workflow in ("enhance", "full"):
        thickness = enh.get("thickness")
        if isinstance(thickness, int) and not isinstance(thickness, bool) and thickness % 2 == 0:
            error("thickness_not_odd", "$.enhancement.thickness", f"enhancement.thickness must be odd, got {thickness}")
        if enh.get("bidirectional") and not isinstance(enh.get("starting_angle"), (int, float)):
            error("starting_angle_missing", "$.enhancement.starting_angle", "bidirectional enhancement requires enhancement.starting_angle")
        if enh.get("increment") == 0:
            error("increment_zero", "$.enhancement.increment", "enhancement.increment must be non-zero")
        if "reverse_axis_rotation" in enh and not enh.get("bidirectional"):
            warning(
                "reverse_axis_rotation_ignored",
                "$.enhancement.reverse_axis_rotation",
                "reverse_axis_rotation only applies to bidirectional enhancement",
            )
        if enh.get("bidirectional") and "first_angle" in enh:
            warning(
                "first_angle_ignored",
                "$.enhancement.first_angle",
                "bidirectional enhancement starts both sweeps at enhancement.starting_angle",
            )

    return _result(issues)


def validate_config_yaml_text(
    yaml_text: str,
    schema_path: str | None = None,
) -> dict:
    try:
        cfg = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        return _result([ValidationIssue(severity="error", code="yaml_parse_error", path="$", message=str(e))])
    return validate_config(cfg, schema_path=schema_path)
