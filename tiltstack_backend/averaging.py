"""
Neighbour averaging

Builds the contrast-enhanced stack: every reference frame is averaged with
the stretch-corrected neighbours of its window after their alignment has been
re-referenced onto the reference frame itself.

Reference positions are independent of each other and run as separate tasks
on a thread pool; results are joined strictly by position.
"""

from __future__ import annotations

import logging
import os
import statistics
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .capabilities import ImagingCapabilities
from .errors import AlignmentCountMismatchError, EmptyInputError, InvalidConfigurationError, PipelineCancelledError
from .ordering import Direction
from .stretch import StretchSet, generate_stretch_set
from .transforms import AffineTransform2D

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Sweep:
    """One monotonic acquisition sweep over a tilt-ordered stack.

    stack_indices holds 1-based stack positions in sweep (acquisition) order.
    """
    stack_indices: Tuple[int, ...]
    first_angle: float
    increment: float
    axis_rotation: float
    direction: Direction = Direction.FORWARD

    @property
    def n(self) -> int:
        return len(self.stack_indices)


@dataclass(frozen=True)
class AveragedFrame:
    position: int
    stack_index: int
    tilt_angle: float
    image: Any
    window: Tuple[int, ...] = ()
    transforms: Tuple[AffineTransform2D, ...] = ()


@dataclass(frozen=True)
class EnhancedSweep:
    sweep: Sweep
    stretch_set: StretchSet
    frames: List[AveragedFrame]
    stack: Any
    angles: List[float] = field(default_factory=list)


def single_sweep(n: int, first_angle: float, increment: float, axis_rotation: float) -> Sweep:
    return Sweep(
        stack_indices=tuple(range(1, int(n) + 1)),
        first_angle=float(first_angle),
        increment=float(increment),
        axis_rotation=float(axis_rotation),
    )


def infer_sweep_geometry(angles: Sequence[float]) -> Tuple[float, float]:
    """First angle and median step of an angle list."""
    if not angles:
        raise EmptyInputError("cannot infer tilt geometry from an empty angle list")
    if len(angles) == 1:
        return float(angles[0]), 0.0
    steps = [float(b) - float(a) for a, b in zip(angles[:-1], angles[1:])]
    return float(angles[0]), float(statistics.median(steps))


def split_bidirectional(
    angles: Sequence[float],
    starting_angle: float,
    increment: float,
    axis_rotation: float,
    reverse_axis_rotation: Optional[float] = None,
    epsilon: float = 1e-6,
) -> List[Sweep]:
    """
    Split an angle-ordered stack into its two acquisition sweeps.

    Frames at or above the starting angle form the forward sweep (ascending),
    frames below it the reverse sweep (descending). The reverse sweep is
    omitted when empty.
    """
    step = abs(float(increment))
    if step == 0.0:
        raise InvalidConfigurationError("bidirectional split needs a non-zero increment")

    order = sorted(range(len(angles)), key=lambda i: angles[i])
    fwd = [i + 1 for i in order if angles[i] >= starting_angle - epsilon]
    rev = [i + 1 for i in reversed(order) if angles[i] < starting_angle - epsilon]
    if not fwd:
        raise EmptyInputError(f"no frames at or above starting angle {starting_angle}")

    sweeps = [
        Sweep(
            stack_indices=tuple(fwd),
            first_angle=float(angles[fwd[0] - 1]),
            increment=step,
            axis_rotation=float(axis_rotation),
            direction=Direction.FORWARD,
        )
    ]
    if rev:
        sweeps.append(
            Sweep(
                stack_indices=tuple(rev),
                first_angle=float(angles[rev[0] - 1]),
                increment=-step,
                axis_rotation=float(axis_rotation if reverse_axis_rotation is None else reverse_axis_rotation),
                direction=Direction.REVERSE,
            )
        )
    logger.info(f"Bidirectional split at {starting_angle:g} deg: {len(fwd)} forward, {len(rev)} reverse frame(s)")
    return sweeps


def sweep_stretch_set(sweep: Sweep, thickness: int) -> StretchSet:
    return generate_stretch_set(
        n=sweep.n,
        axis_rotation=sweep.axis_rotation,
        first_angle=sweep.first_angle,
        increment=sweep.increment,
        thickness=thickness,
    )


def average_reference(
    position: int,
    stack: Any,
    sweep: Sweep,
    stretch_set: StretchSet,
    capabilities: ImagingCapabilities,
) -> AveragedFrame:
    """Average one reference position with its stretch-corrected window."""
    window = stretch_set.window(position)
    stretches = stretch_set.transforms(position)
    stack_idx = [sweep.stack_indices[p - 1] for p in window]

    originals = capabilities.extract(stack, stack_idx)
    stretched = [capabilities.apply_transform(originals[i], stretches[i]) for i in range(len(window))]

    raw = list(capabilities.align_pairwise(stretched))
    if len(raw) != len(window):
        raise AlignmentCountMismatchError(
            "AVERAGING", len(window), len(raw), f"alignment transforms for reference position {position}"
        )

    # the reference's own entry maps it into the aligner's pivot; undo that
    pivot_inverse = capabilities.invert(raw[window.index(position)])

    finals = []
    for stretch, alignment in zip(stretches, raw):
        combined = capabilities.compose(alignment, pivot_inverse)
        finals.append(capabilities.compose(stretch, combined))

    transformed = [capabilities.apply_transform(originals[i], finals[i]) for i in range(len(window))]
    image = capabilities.average(transformed)

    return AveragedFrame(
        position=position,
        stack_index=sweep.stack_indices[position - 1],
        tilt_angle=stretch_set.tilt(position),
        image=image,
        window=tuple(window),
        transforms=tuple(finals),
    )


def _resolve_workers(max_workers: Optional[int]) -> int:
    cpu_cores = os.cpu_count() or 1
    if max_workers is None or int(max_workers) < 1:
        return cpu_cores
    if int(max_workers) > cpu_cores:
        logger.warning(f"max_workers ({max_workers}) exceeds CPU cores ({cpu_cores}), capping to {cpu_cores}")
        return cpu_cores
    return int(max_workers)


def average_sweep(
    stack: Any,
    sweep: Sweep,
    thickness: int,
    capabilities: ImagingCapabilities,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[Callable[[int, int], None]] = None,
    stretch_set: Optional[StretchSet] = None,
) -> EnhancedSweep:
    """
    Enhance every frame of a sweep.

    Args:
        stack: Tilt-ordered stack shared read-only by all tasks
        sweep: Sweep geometry and stack positions
        thickness: Odd window size
        capabilities: Imaging capability provider
        max_workers: Thread pool size (default: CPU count)
        cancel_event: Checked before each reference position starts
        progress: Optional callback(done, total)
        stretch_set: Precomputed stretch set for this sweep

    Returns:
        EnhancedSweep with frames and stack in sweep position order
    """
    if sweep.n < 1:
        raise EmptyInputError("sweep has no frames")

    if stretch_set is None:
        stretch_set = sweep_stretch_set(sweep, thickness)
    elif stretch_set.n != sweep.n:
        raise InvalidConfigurationError(f"stretch set covers {stretch_set.n} positions, sweep has {sweep.n}")

    def cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def job(pos: int) -> Optional[AveragedFrame]:
        if cancelled():
            return None
        return average_reference(pos, stack, sweep, stretch_set, capabilities)

    total = sweep.n
    results: Dict[int, AveragedFrame] = {}
    workers = _resolve_workers(max_workers)

    if workers <= 1:
        for pos in range(1, total + 1):
            frame = job(pos)
            if frame is None:
                break
            results[pos] = frame
            if progress is not None:
                progress(len(results), total)
    else:
        exe = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tiltstack-avg")
        try:
            futures = [exe.submit(job, pos) for pos in range(1, total + 1)]
            for f in as_completed(futures):
                frame = f.result()
                if frame is None:
                    break
                results[frame.position] = frame
                if progress is not None:
                    progress(len(results), total)
                if cancelled():
                    break
        finally:
            exe.shutdown(wait=True, cancel_futures=True)

    if cancelled() or len(results) != total:
        raise PipelineCancelledError(
            f"averaging cancelled after {len(results)}/{total} reference position(s); partial results discarded"
        )

    frames = [results[pos] for pos in range(1, total + 1)]
    out_stack = capabilities.concatenate([fr.image for fr in frames], [fr.position for fr in frames])
    logger.info(f"Averaged {total} reference position(s) ({sweep.direction.value} sweep, thickness={thickness})")
    return EnhancedSweep(
        sweep=sweep,
        stretch_set=stretch_set,
        frames=frames,
        stack=out_stack,
        angles=[fr.tilt_angle for fr in frames],
    )


def merge_sweeps(results: Sequence[EnhancedSweep], capabilities: ImagingCapabilities) -> Tuple[Any, List[float]]:
    """Interleave enhanced sweeps into one stack ordered by tilt angle (stable)."""
    items = []
    for res in results:
        for fr in res.frames:
            items.append((fr.tilt_angle, fr.image))
    if not items:
        raise EmptyInputError("no enhanced frames to merge")
    items_sorted = sorted(range(len(items)), key=lambda i: items[i][0])
    rank = {i: r for r, i in enumerate(items_sorted, start=1)}
    stack = capabilities.concatenate([img for _, img in items], [rank[i] for i in range(len(items))])
    return stack, [items[i][0] for i in items_sorted]
