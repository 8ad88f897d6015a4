"""
Image stack file utilities.

Stacks are stored as FITS cubes of shape (n, h, w); a single 2D image is read
as a one-frame stack.
"""

from pathlib import Path
from typing import Any, Optional

import numpy as np
from astropy.io import fits

from .errors import InputValidationError


def is_stack_path(p: Path) -> bool:
    suf = p.suffix.lower()
    return suf in {".fit", ".fits", ".fts"}


def read_stack(path: Path) -> tuple[np.ndarray, Any]:
    """Read a stack as float32 with its primary header."""
    p = Path(path)
    if not p.exists() or not p.is_file():
        raise InputValidationError(f"stack not found: {p}")
    try:
        with fits.open(str(p), memmap=False) as hdul:
            hdr = hdul[0].header.copy()
            data = hdul[0].data
            if data is None:
                raise InputValidationError(f"no data in FITS: {p}")
            arr = np.asarray(data).astype("float32", copy=True)
    except OSError as e:
        raise InputValidationError(f"cannot read stack {p}: {e}", original_error=e)

    if arr.ndim == 2:
        arr = arr[None, :, :]
    if arr.ndim != 3:
        raise InputValidationError(f"expected a 2D image or 3D stack in {p}, got {arr.ndim} dimensions")
    return arr, hdr


def write_stack(path: Path, data: np.ndarray, header: Optional[fits.Header] = None) -> Path:
    """Write stack as FITS cube, keeping non-structural header cards."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    hdu = fits.PrimaryHDU(np.asarray(data, dtype=np.float32))
    if header:
        for key, val in header.items():
            if key in ('SIMPLE', 'BITPIX', 'NAXIS', 'NAXIS1', 'NAXIS2', 'NAXIS3', 'EXTEND', 'BZERO', 'BSCALE'):
                continue
            try:
                hdu.header[key] = val
            except (ValueError, KeyError):
                pass
    hdu.header["NFRAMES"] = (int(np.asarray(data).shape[0]), "frames in stack")
    hdu.writeto(str(p), overwrite=True)
    return p
