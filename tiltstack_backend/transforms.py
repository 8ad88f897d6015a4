"""
Parametric 2D affine transforms.

Transforms map centre-relative image coordinates: x' = A·x + d with A the
2x2 linear part and d the translation. Composition follows the
"apply first, then second" convention throughout the package.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Tuple

import numpy as np

from .errors import InputValidationError, InvalidConfigurationError
from .records import data_rows, parse_float


@dataclass(frozen=True)
class AffineTransform2D:
    a11: float = 1.0
    a12: float = 0.0
    a21: float = 0.0
    a22: float = 1.0
    dx: float = 0.0
    dy: float = 0.0

    @classmethod
    def identity(cls) -> "AffineTransform2D":
        return cls()

    @classmethod
    def translation(cls, dx: float, dy: float) -> "AffineTransform2D":
        return cls(dx=float(dx), dy=float(dy))

    @classmethod
    def rotation(cls, angle_deg: float) -> "AffineTransform2D":
        t = np.deg2rad(angle_deg)
        c, s = float(np.cos(t)), float(np.sin(t))
        return cls(a11=c, a12=-s, a21=s, a22=c)

    @classmethod
    def from_matrix(cls, m: np.ndarray) -> "AffineTransform2D":
        m = np.asarray(m, dtype=np.float64)
        if m.shape not in ((2, 3), (3, 3)):
            raise ValueError(f"expected a 2x3 or 3x3 matrix, got shape {m.shape}")
        return cls(
            a11=float(m[0, 0]), a12=float(m[0, 1]),
            a21=float(m[1, 0]), a22=float(m[1, 1]),
            dx=float(m[0, 2]), dy=float(m[1, 2]),
        )

    def matrix(self) -> np.ndarray:
        return np.array(
            [[self.a11, self.a12, self.dx], [self.a21, self.a22, self.dy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def coefficients(self) -> Tuple[float, float, float, float, float, float]:
        return (self.a11, self.a12, self.a21, self.a22, self.dx, self.dy)

    def determinant(self) -> float:
        return self.a11 * self.a22 - self.a12 * self.a21

    def then(self, other: "AffineTransform2D") -> "AffineTransform2D":
        """Transform that applies self first, then other."""
        return AffineTransform2D.from_matrix(other.matrix() @ self.matrix())

    def inverse(self) -> "AffineTransform2D":
        if abs(self.determinant()) < 1e-12:
            raise InvalidConfigurationError(f"transform is not invertible: {self.coefficients()}")
        return AffineTransform2D.from_matrix(np.linalg.inv(self.matrix()))

    def is_close(self, other: "AffineTransform2D", atol: float = 1e-9) -> bool:
        return bool(np.allclose(self.coefficients(), other.coefficients(), rtol=0.0, atol=atol))

    def is_identity(self, atol: float = 1e-9) -> bool:
        return self.is_close(AffineTransform2D.identity(), atol=atol)

    def apply_to_point(self, x: float, y: float) -> Tuple[float, float]:
        return (self.a11 * x + self.a12 * y + self.dx, self.a21 * x + self.a22 * y + self.dy)

    def to_pixel_matrix(self, width: int, height: int) -> np.ndarray:
        """2x3 matrix in absolute pixel coordinates (origin top-left)."""
        cx = (width - 1) / 2.0
        cy = (height - 1) / 2.0
        a = np.array([[self.a11, self.a12], [self.a21, self.a22]], dtype=np.float64)
        c = np.array([cx, cy], dtype=np.float64)
        d = np.array([self.dx, self.dy], dtype=np.float64) + c - a @ c
        return np.hstack([a, d[:, None]])

    def format_line(self) -> str:
        return " ".join(f"{v:.7f}" for v in self.coefficients())


def compose(first: AffineTransform2D, second: AffineTransform2D) -> AffineTransform2D:
    return first.then(second)


def parse_coefficients(tokens: List[str], path: Path, lineno: int) -> AffineTransform2D:
    if len(tokens) != 6:
        raise InputValidationError(f"{path}:{lineno}: expected 6 transform coefficients, got {len(tokens)}")
    vals = [parse_float(t, path, lineno) for t in tokens]
    return AffineTransform2D(*vals)


def read_transform_file(path: Path) -> List[AffineTransform2D]:
    return [parse_coefficients(cols, path, lineno) for lineno, cols in data_rows(path)]


def write_transform_file(path: Path, transforms: Iterable[AffineTransform2D]) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    lines = [t.format_line() for t in transforms]
    p.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    return p
