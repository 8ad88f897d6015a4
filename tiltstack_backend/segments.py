"""
Segment extraction

Classifies per-frame records as blank or non-blank and collapses runs of
non-blank frames into contiguous segments. Two classification rules exist:

- kept list: an externally supplied list of frames saved by the acquisition
  software (incremental acquisition)
- threshold: frames whose intensity statistic reaches a threshold (blank
  frame detection)

Short runs are discarded as noise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence

from .errors import EmptyInputError, InvalidConfigurationError
from .records import Frame

logger = logging.getLogger(__name__)

MIN_SEGMENT_LENGTH = 3


@dataclass(frozen=True)
class Segment:
    start_index: int
    end_index: int

    @property
    def length(self) -> int:
        return self.end_index - self.start_index + 1

    def indices(self) -> range:
        return range(self.start_index, self.end_index + 1)

    def trimmed(self) -> "Segment":
        return Segment(self.start_index + 1, self.end_index - 1)


def classify_frames(
    frames: Sequence[Frame],
    kept_indices: Optional[Iterable[int]] = None,
    threshold: Optional[float] = None,
    epsilon: float = 1e-6,
) -> List[Frame]:
    """Return copies of the frames with is_blank set by the active rule."""
    if (kept_indices is None) == (threshold is None):
        raise InvalidConfigurationError("exactly one of kept_indices or threshold must be given")

    if kept_indices is not None:
        kept = set(int(i) for i in kept_indices)
        return [replace(f, is_blank=f.index not in kept) for f in frames]

    thr = float(threshold) - float(epsilon)
    return [replace(f, is_blank=not (f.intensity_stat >= thr)) for f in frames]


def _collapse_runs(indices: Iterable[int]) -> List[Segment]:
    runs: List[Segment] = []
    start = prev = None
    for idx in sorted(set(indices)):
        if start is None:
            start = prev = idx
        elif idx == prev + 1:
            prev = idx
        else:
            runs.append(Segment(start, prev))
            start = prev = idx
    if start is not None:
        runs.append(Segment(start, prev))
    return runs


def extract_segments(
    frames: Sequence[Frame],
    kept_indices: Optional[Iterable[int]] = None,
    threshold: Optional[float] = None,
    min_segment_length: int = MIN_SEGMENT_LENGTH,
    trim_edges: bool = False,
    epsilon: float = 1e-6,
) -> List[Segment]:
    """
    Find contiguous non-blank segments in acquisition order.

    Args:
        frames: Per-frame records in acquisition order
        kept_indices: Kept-frame list (incremental acquisition mode)
        threshold: Intensity threshold (blank-frame mode)
        min_segment_length: Segments with length <= this value are dropped
        trim_edges: Drop the first and last frame of each retained segment
        epsilon: Tolerance applied to the threshold comparison

    Returns:
        Segments sorted by start index
    """
    if min_segment_length < 0:
        raise InvalidConfigurationError(f"min_segment_length must be >= 0, got {min_segment_length}")

    classified = classify_frames(frames, kept_indices=kept_indices, threshold=threshold, epsilon=epsilon)
    runs = _collapse_runs(f.index for f in classified if not f.is_blank)

    segments = [s for s in runs if s.length > min_segment_length]
    dropped = len(runs) - len(segments)
    if dropped:
        logger.info(f"Discarded {dropped} segment(s) of length <= {min_segment_length}")

    if trim_edges:
        segments = [s.trimmed() for s in segments]
        # a trimmed segment can only vanish when min_segment_length < 2
        segments = [s for s in segments if s.length > 0]

    if not segments:
        raise EmptyInputError(
            f"no segments survived filtering ({len(frames)} frames, {len(runs)} runs, "
            f"min_segment_length={min_segment_length})"
        )

    logger.info(f"Extracted {len(segments)} segment(s) from {len(frames)} frame records")
    return segments
