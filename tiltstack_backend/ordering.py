"""
Order reconstruction

Pairs acquisition-order segments with the separately recorded tilt angles and
sorts them into tilt-angle order. This is the only place where the final
frame order is decided; everything downstream is positional.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from .errors import EmptyInputError
from .segments import Segment

logger = logging.getLogger(__name__)


class Direction(str, enum.Enum):
    FORWARD = "forward"
    REVERSE = "reverse"


@dataclass(frozen=True)
class OrderEntry:
    output_position: int
    segment: Segment
    tilt_angle: float
    direction: Direction = Direction.FORWARD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output_position": self.output_position,
            "start_index": self.segment.start_index,
            "end_index": self.segment.end_index,
            "tilt_angle": self.tilt_angle,
            "direction": self.direction.value,
        }


def sweep_directions(angles: Sequence[float]) -> List[Direction]:
    """Label each acquisition position with its sweep.

    Positions up to the first reversal of the angle step are FORWARD, all
    later positions REVERSE. Zero steps do not count as a reversal.
    """
    directions = [Direction.FORWARD] * len(angles)
    sign = 0
    for i in range(1, len(angles)):
        step = angles[i] - angles[i - 1]
        s = (step > 0) - (step < 0)
        if s == 0:
            continue
        if sign == 0:
            sign = s
        elif s != sign:
            for j in range(i, len(angles)):
                directions[j] = Direction.REVERSE
            break
    return directions


def reconstruct_order(segments: Sequence[Segment], angles: Sequence[float]) -> List[OrderEntry]:
    """
    Map acquisition-order segments to tilt-angle order.

    Segment k is paired with angle k. When the two lists disagree in length
    the longer one is truncated from its tail; the dropped items are logged.
    The paired list is stably sorted by angle and numbered 1..M.
    """
    n_seg = len(segments)
    n_ang = len(angles)
    if n_seg != n_ang:
        n = min(n_seg, n_ang)
        if n_seg > n_ang:
            lost = ", ".join(f"{s.start_index}-{s.end_index}" for s in segments[n:])
            logger.warning(
                f"Segment/angle count mismatch: {n_seg} segments vs {n_ang} angles; "
                f"dropping trailing segment(s) {lost}"
            )
        else:
            lost = ", ".join(f"{a:g}" for a in angles[n:])
            logger.warning(
                f"Segment/angle count mismatch: {n_seg} segments vs {n_ang} angles; "
                f"dropping trailing angle(s) {lost}"
            )
        segments = segments[:n]
        angles = angles[:n]

    if not segments:
        raise EmptyInputError("no segment/angle pairs to order")

    angles = [float(a) for a in angles]
    directions = sweep_directions(angles)
    paired = list(zip(segments, angles, directions))
    paired.sort(key=lambda item: item[1])

    return [
        OrderEntry(output_position=pos, segment=seg, tilt_angle=angle, direction=direction)
        for pos, (seg, angle, direction) in enumerate(paired, start=1)
    ]
