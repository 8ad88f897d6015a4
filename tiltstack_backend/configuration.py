"""
Runtime configuration access.

Loads a YAML configuration, validates it and exposes each section as a plain
dict with defaults filled in.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import InputValidationError, InvalidConfigurationError
from .validate import validate_config

WORKFLOWS = ("reorder", "enhance", "full")

_INPUT_KEYS = ("raw_stack", "frame_stats", "kept_frames", "angles", "ordered_stack", "ordered_angles")


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    v = cfg.get(name)
    return v if isinstance(v, dict) else {}


def load_config_text(path: Path) -> str:
    p = Path(path)
    if not p.exists() or not p.is_file():
        raise InputValidationError(f"config not found: {p}")
    return p.read_text(encoding="utf-8")


def parse_config(yaml_text: str, schema_path: Optional[str] = None) -> Dict[str, Any]:
    """Parse and validate; raises InvalidConfigurationError listing every error."""
    try:
        cfg = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        raise InvalidConfigurationError(f"failed to parse config as YAML: {e}", original_error=e)
    if cfg is None:
        cfg = {}

    result = validate_config(cfg, schema_path=schema_path)
    if not result["valid"]:
        details = "; ".join(f"{e['code']} at {e['path']}: {e['message']}" for e in result["errors"])
        raise InvalidConfigurationError(f"invalid configuration: {details}")
    return cfg


def load_config(path: Path, schema_path: Optional[str] = None) -> Dict[str, Any]:
    return parse_config(load_config_text(path), schema_path=schema_path)


def get_pipeline_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    p = _section(cfg, "pipeline")
    return {
        "workflow": str(p.get("workflow", "full")),
        "max_workers": p.get("max_workers"),
    }


def get_segmentation_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    s = _section(cfg, "segmentation")
    mode = str(s.get("mode", "kept_list"))
    return {
        "mode": mode,
        "threshold": s.get("threshold"),
        "epsilon": float(s.get("epsilon", 1e-6)),
        "min_segment_length": int(s.get("min_segment_length", 3)),
        "trim_edges": bool(s.get("trim_edges", False)) and mode == "kept_list",
    }


def get_correction_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    c = _section(cfg, "correction")
    return {
        "engine": str(c.get("engine", "array")),
        "command": c.get("command"),
        "timeout_s": float(c.get("timeout_s", 3600)),
    }


def get_enhancement_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    e = _section(cfg, "enhancement")
    thickness = int(e.get("thickness", 5))
    if thickness < 1 or thickness % 2 == 0:
        raise InvalidConfigurationError(f"enhancement.thickness must be a positive odd number, got {thickness}")
    return {
        "thickness": thickness,
        "axis_rotation": float(e.get("axis_rotation", 0.0)),
        "first_angle": None if e.get("first_angle") is None else float(e["first_angle"]),
        "increment": None if e.get("increment") is None else float(e["increment"]),
        "bidirectional": bool(e.get("bidirectional", False)),
        "starting_angle": None if e.get("starting_angle") is None else float(e["starting_angle"]),
        "reverse_axis_rotation": None if e.get("reverse_axis_rotation") is None else float(e["reverse_axis_rotation"]),
    }


def resolve_input_paths(cfg: Dict[str, Any], input_dir: Path) -> Dict[str, Optional[Path]]:
    """Input paths from the config, relative ones resolved against input_dir."""
    inp = _section(cfg, "input")
    base = Path(input_dir).expanduser().resolve()
    out: Dict[str, Optional[Path]] = {}
    for key in _INPUT_KEYS:
        v = inp.get(key)
        if not v:
            out[key] = None
            continue
        p = Path(str(v)).expanduser()
        out[key] = p if p.is_absolute() else (base / p)
    return out
