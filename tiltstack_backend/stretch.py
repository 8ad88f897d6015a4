"""
Stretch reference generation

For every reference position of a sweep, computes the foreshortening
correction transform of each neighbour in its window. A projection at tilt
angle t appears stretched by 1/cos(t) perpendicular to the tilt axis, so a
neighbour f is brought onto the geometry of reference r by scaling with
cos(tilt(r)) / cos(tilt(f)) along that axis.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from .errors import InputValidationError, InvalidConfigurationError
from .records import data_rows, parse_index
from .transforms import AffineTransform2D, parse_coefficients

logger = logging.getLogger(__name__)

COS_EPS = 1e-9


def tilt_angle(position: int, first_angle: float, increment: float) -> float:
    """Nominal tilt angle of a 1-based sweep position."""
    return float(first_angle) + (int(position) - 1) * float(increment)


def padding_for_thickness(thickness: int) -> int:
    thickness = int(thickness)
    if thickness < 1 or thickness % 2 == 0:
        raise InvalidConfigurationError(f"thickness must be a positive odd number, got {thickness}")
    return (thickness - 1) // 2


def neighbor_window(reference: int, n: int, padding: int) -> List[int]:
    """Positions [reference-padding, reference+padding] clipped to [1, n]."""
    if not 1 <= reference <= n:
        raise InvalidConfigurationError(f"reference position {reference} outside 1..{n}")
    lo = max(1, reference - padding)
    hi = min(n, reference + padding)
    return list(range(lo, hi + 1))


def stretch_transform(factor: float, axis_rotation: float) -> AffineTransform2D:
    """Scale by factor along the x axis of a frame rotated by axis_rotation degrees."""
    rot = AffineTransform2D.rotation(axis_rotation)
    scale = AffineTransform2D(a11=float(factor))
    return rot.inverse().then(scale).then(rot)


def stretch_factor(reference_angle: float, neighbor_angle: float) -> float:
    c_ref = math.cos(math.radians(reference_angle))
    c_nb = math.cos(math.radians(neighbor_angle))
    if abs(c_nb) < COS_EPS or abs(c_ref) < COS_EPS:
        raise InvalidConfigurationError(
            f"tilt angle too close to 90 degrees for a stretch factor: {reference_angle} / {neighbor_angle}"
        )
    return c_ref / c_nb


@dataclass(frozen=True)
class StretchSet:
    n: int
    padding: int
    axis_rotation: float
    first_angle: float
    increment: float
    entries: Dict[int, Tuple[Tuple[int, AffineTransform2D], ...]] = field(default_factory=dict)

    def window(self, reference: int) -> List[int]:
        return [nb for nb, _ in self.entries[reference]]

    def transforms(self, reference: int) -> List[AffineTransform2D]:
        return [t for _, t in self.entries[reference]]

    def tilt(self, position: int) -> float:
        return tilt_angle(position, self.first_angle, self.increment)

    def __len__(self) -> int:
        return len(self.entries)


def generate_stretch_set(
    n: int,
    axis_rotation: float,
    first_angle: float,
    increment: float,
    thickness: int,
) -> StretchSet:
    """
    Compute the stretch transforms for all n reference positions.

    Args:
        n: Number of frames in the sweep
        axis_rotation: Tilt-axis rotation in degrees
        first_angle: Tilt angle of position 1
        increment: Signed tilt increment per position
        thickness: Odd window size

    Returns:
        StretchSet keyed by reference position (1..n)
    """
    padding = padding_for_thickness(thickness)
    if int(n) < 1:
        raise InvalidConfigurationError(f"frame count must be >= 1, got {n}")

    entries: Dict[int, Tuple[Tuple[int, AffineTransform2D], ...]] = {}
    for ref in range(1, int(n) + 1):
        ref_angle = tilt_angle(ref, first_angle, increment)
        row = []
        for nb in neighbor_window(ref, n, padding):
            factor = stretch_factor(ref_angle, tilt_angle(nb, first_angle, increment))
            row.append((nb, stretch_transform(factor, axis_rotation)))
        entries[ref] = tuple(row)

    logger.info(
        f"Generated stretch set: n={n}, thickness={thickness}, axis_rotation={axis_rotation}, "
        f"first_angle={first_angle}, increment={increment}"
    )
    return StretchSet(
        n=int(n),
        padding=padding,
        axis_rotation=float(axis_rotation),
        first_angle=float(first_angle),
        increment=float(increment),
        entries=entries,
    )


def write_stretch_file(path: Path, stretch_set: StretchSet) -> Path:
    """One line per (reference, neighbour) pair followed by the 6 coefficients."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    lines = []
    for ref in sorted(stretch_set.entries):
        for nb, t in stretch_set.entries[ref]:
            lines.append(f"{ref} {nb} {t.format_line()}")
    p.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    return p


def read_stretch_file(path: Path) -> Dict[int, List[Tuple[int, AffineTransform2D]]]:
    out: Dict[int, List[Tuple[int, AffineTransform2D]]] = {}
    for lineno, cols in data_rows(path):
        if len(cols) != 8:
            raise InputValidationError(f"{path}:{lineno}: expected 8 columns, got {len(cols)}")
        ref = parse_index(cols[0], path, lineno)
        nb = parse_index(cols[1], path, lineno)
        out.setdefault(ref, []).append((nb, parse_coefficients(cols[2:], path, lineno)))
    return out


def stretch_summary(stretch_set: StretchSet) -> Iterable[dict]:
    for ref in sorted(stretch_set.entries):
        yield {
            "reference": ref,
            "tilt_angle": stretch_set.tilt(ref),
            "neighbors": [
                {"position": nb, "factor": stretch_factor(stretch_set.tilt(ref), stretch_set.tilt(nb))}
                for nb, _ in stretch_set.entries[ref]
            ],
        }
