"""
Stack assembly

Drives extraction and correction of each ordered segment and concatenates the
corrected frames into the final tilt-ordered stack.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from .capabilities import ImagingCapabilities
from .errors import AssemblyCountMismatchError, EmptyInputError, PipelineCancelledError
from .ordering import OrderEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssembledStack:
    stack: Any
    angles: List[float]
    entries: List[OrderEntry]


def assemble_stack(
    order: Sequence[OrderEntry],
    raw_stack: Any,
    capabilities: ImagingCapabilities,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[Callable[[int, int], None]] = None,
) -> AssembledStack:
    """
    Build the tilt-ordered stack from the order entries.

    Args:
        order: Entries from reconstruct_order
        raw_stack: Raw acquisition-order stack (opaque to this module)
        capabilities: Extract/Correct/Concatenate provider
        cancel_event: Checked before every segment
        progress: Optional callback(done, total)

    Returns:
        AssembledStack with one frame and one angle per entry
    """
    entries = sorted(order, key=lambda e: e.output_position)
    if not entries:
        raise EmptyInputError("no order entries to assemble")

    total = len(entries)
    corrected = []
    for done, entry in enumerate(entries, start=1):
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelledError("assembly cancelled")
        substack = capabilities.extract(raw_stack, entry.segment.indices())
        corrected.append(capabilities.correct(substack))
        logger.debug(
            f"Corrected segment {entry.segment.start_index}-{entry.segment.end_index} "
            f"-> position {entry.output_position} ({entry.tilt_angle:g} deg)"
        )
        if progress is not None:
            progress(done, total)

    produced = sum(1 for c in corrected if c is not None)
    if produced != total:
        raise AssemblyCountMismatchError("ASSEMBLY", total, produced, "corrected frames")

    positions = [e.output_position for e in entries]
    stack = capabilities.concatenate(corrected, positions)
    n_out = capabilities.frame_count(stack)
    if n_out != total:
        raise AssemblyCountMismatchError("ASSEMBLY", total, n_out, "frames in concatenated stack")

    logger.info(f"Assembled {total} frame(s) in tilt-angle order")
    return AssembledStack(stack=stack, angles=[e.tilt_angle for e in entries], entries=list(entries))
