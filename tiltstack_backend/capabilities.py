"""
Imaging capabilities consumed by the pipeline.

The core never touches pixels directly; it calls an ImagingCapabilities
object. ArrayCapabilities is the in-process implementation working on numpy
stacks of shape (n, h, w) with OpenCV for warping and phase correlation.
"""

from __future__ import annotations

import abc
from typing import List, Sequence

import cv2
import numpy as np

from .errors import InputValidationError
from .transforms import AffineTransform2D, compose


class ImagingCapabilities(abc.ABC):
    """Narrow interface to an imaging toolchain.

    Frame indices passed to extract() are 1-based positions in the stack.
    """

    @abc.abstractmethod
    def extract(self, stack, indices: Sequence[int]):
        ...

    @abc.abstractmethod
    def correct(self, substack):
        ...

    @abc.abstractmethod
    def align_pairwise(self, frames) -> List[AffineTransform2D]:
        ...

    @abc.abstractmethod
    def apply_transform(self, frame, transform: AffineTransform2D):
        ...

    @abc.abstractmethod
    def average(self, frames):
        ...

    @abc.abstractmethod
    def concatenate(self, frames, order: Sequence[int]):
        ...

    def frame_count(self, stack) -> int:
        return len(stack)

    def invert(self, transform: AffineTransform2D) -> AffineTransform2D:
        return transform.inverse()

    def compose(self, first: AffineTransform2D, second: AffineTransform2D) -> AffineTransform2D:
        return compose(first, second)


def phasecorr_shift(ref: np.ndarray, moving: np.ndarray) -> tuple[float, float]:
    """Shift (dx, dy) of moving relative to ref."""
    a = np.asarray(ref, dtype=np.float32)
    b = np.asarray(moving, dtype=np.float32)
    win = cv2.createHanningWindow((a.shape[1], a.shape[0]), cv2.CV_32F)
    (dx, dy), _ = cv2.phaseCorrelate(a, b, win)
    return float(dx), float(dy)


class ArrayCapabilities(ImagingCapabilities):
    def __init__(self, interpolation: int = cv2.INTER_LINEAR):
        self.interpolation = interpolation

    def extract(self, stack: np.ndarray, indices: Sequence[int]) -> np.ndarray:
        idx = [int(i) for i in indices]
        n = len(stack)
        if not idx:
            raise InputValidationError("extract: empty index list")
        bad = [i for i in idx if not 1 <= i <= n]
        if bad:
            raise InputValidationError(f"extract: indices {bad} outside stack of {n} frames")
        return np.asarray(stack)[[i - 1 for i in idx]]

    def correct(self, substack: np.ndarray) -> np.ndarray:
        """Align every frame of the substack to its first frame and average."""
        frames = np.asarray(substack, dtype=np.float32)
        if frames.ndim == 2:
            return frames
        ref = frames[0]
        aligned = [ref]
        for fr in frames[1:]:
            dx, dy = phasecorr_shift(ref, fr)
            aligned.append(self.apply_transform(fr, AffineTransform2D.translation(-dx, -dy)))
        return self.average(aligned)

    def align_pairwise(self, frames: np.ndarray) -> List[AffineTransform2D]:
        """Chain neighbour shifts; transforms map each frame onto the middle frame."""
        frames = np.asarray(frames, dtype=np.float32)
        n = len(frames)
        pivot = n // 2
        cum = [(0.0, 0.0)]
        for i in range(1, n):
            dx, dy = phasecorr_shift(frames[i - 1], frames[i])
            cum.append((cum[-1][0] + dx, cum[-1][1] + dy))
        px, py = cum[pivot]
        return [AffineTransform2D.translation(-(cx - px), -(cy - py)) for cx, cy in cum]

    def apply_transform(self, frame: np.ndarray, transform: AffineTransform2D) -> np.ndarray:
        f = np.asarray(frame, dtype=np.float32)
        h, w = f.shape[:2]
        m = transform.to_pixel_matrix(w, h)
        return cv2.warpAffine(
            f,
            m,
            (w, h),
            flags=self.interpolation,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=float(np.mean(f)),
        )

    def average(self, frames) -> np.ndarray:
        arr = np.asarray(frames, dtype=np.float32)
        return arr.mean(axis=0).astype(np.float32, copy=False)

    def concatenate(self, frames, order: Sequence[int]) -> np.ndarray:
        frames = list(frames)
        if len(frames) != len(order):
            raise InputValidationError(f"concatenate: {len(frames)} frames but {len(order)} order entries")
        ranked = sorted(range(len(frames)), key=lambda i: order[i])
        return np.stack([np.asarray(frames[i], dtype=np.float32) for i in ranked], axis=0)
