"""
Line-oriented numeric record files.

Readers and writers for per-frame statistics, kept-frame lists and tilt-angle
files. All readers accept '#' comments, blank lines and either whitespace or
comma separated columns.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .errors import InputValidationError

_SPLIT = re.compile(r"[,\s]+")


@dataclass(frozen=True)
class Frame:
    index: int
    intensity_stat: float
    tilt_angle: Optional[float] = None
    is_blank: bool = False


def data_rows(path: Path) -> list[tuple[int, list[str]]]:
    p = Path(path)
    if not p.exists() or not p.is_file():
        raise InputValidationError(f"input file not found: {p}")
    rows: list[tuple[int, list[str]]] = []
    for lineno, raw in enumerate(p.read_text(encoding="utf-8", errors="replace").splitlines(), start=1):
        s = raw.split("#", 1)[0].strip()
        if not s:
            continue
        rows.append((lineno, [t for t in _SPLIT.split(s) if t]))
    return rows


def parse_float(tok: str, path: Path, lineno: int) -> float:
    try:
        return float(tok)
    except ValueError as e:
        raise InputValidationError(f"{path}:{lineno}: not a number: {tok!r}", original_error=e)


def parse_index(tok: str, path: Path, lineno: int) -> int:
    v = parse_float(tok, path, lineno)
    if not math.isfinite(v):
        raise InputValidationError(f"{path}:{lineno}: frame index must be finite, got {tok!r}")
    if v != int(v) or v < 1:
        raise InputValidationError(f"{path}:{lineno}: frame index must be a positive integer, got {tok!r}")
    return int(v)


def read_frame_stats(path: Path) -> list[tuple[int, float]]:
    """Read (index, intensity) pairs.

    A single-column file is read as intensities in acquisition order with
    implicit 1-based indices.
    """
    rows = data_rows(path)
    out: list[tuple[int, float]] = []
    for i, (lineno, cols) in enumerate(rows, start=1):
        if len(cols) == 1:
            out.append((i, parse_float(cols[0], path, lineno)))
        elif len(cols) == 2:
            out.append((parse_index(cols[0], path, lineno), parse_float(cols[1], path, lineno)))
        else:
            raise InputValidationError(f"{path}:{lineno}: expected 1 or 2 columns, got {len(cols)}")

    indices = [idx for idx, _ in out]
    if len(set(indices)) != len(indices):
        raise InputValidationError(f"{path}: duplicate frame indices")
    if indices != sorted(indices):
        raise InputValidationError(f"{path}: frame indices must be in acquisition order")
    return out


def read_kept_frames(path: Path) -> list[int]:
    """Read an explicit kept-frame index list (one or more indices per line)."""
    out: list[int] = []
    for lineno, cols in data_rows(path):
        out.extend(parse_index(tok, path, lineno) for tok in cols)
    return sorted(set(out))


def read_angle_file(path: Path) -> list[float]:
    out: list[float] = []
    for lineno, cols in data_rows(path):
        if len(cols) != 1:
            raise InputValidationError(f"{path}:{lineno}: expected one angle per line, got {len(cols)} columns")
        out.append(parse_float(cols[0], path, lineno))
    return out


def _format_angle(a: float) -> str:
    # two decimals unless that would round the value
    s = f"{a:.2f}"
    return s if float(s) == a else f"{a:.10g}"


def write_angle_file(path: Path, angles: Iterable[float]) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    lines = [_format_angle(float(a)) for a in angles]
    p.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    return p


def frames_from_stats(stats: Iterable[tuple[int, float]], angles: Optional[list[float]] = None) -> list[Frame]:
    """Build Frame records from parsed statistics.

    Angles, when given, are attached positionally (first angle to the first
    record); records beyond the angle list keep tilt_angle=None.
    """
    frames = []
    for pos, (idx, stat) in enumerate(stats):
        angle = angles[pos] if angles is not None and pos < len(angles) else None
        frames.append(Frame(index=int(idx), intensity_stat=float(stat), tilt_angle=angle))
    return frames
