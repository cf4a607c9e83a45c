"""
IO utilities for handing grids to file formats.
"""

import logging
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import segyio

from .errors import GridIOError
from .fftgrid import BaseGrid, FFTGrid, GridShape

logger = logging.getLogger(__name__)

STORM_MISSING = -999.0


def write_storm_file(path: str, grid: BaseGrid, simbox, ascii: bool = False):
    """
    Write the logical box as a Storm petro cube.

    The header comes from the simbox; values follow with i fastest, then j,
    then k, as big-endian float32 (or one value per line for ascii).
    """
    values = grid.to_array()
    values = np.where(np.isfinite(values), values, STORM_MISSING)
    ordered = values.transpose(2, 1, 0).ravel()
    try:
        if ascii:
            with open(path, "w") as f:
                f.write(simbox.storm_header(ascii=True))
                np.savetxt(f, ordered, fmt="%.6g")
        else:
            with open(path, "wb") as f:
                f.write(simbox.storm_header().encode("ascii"))
                f.write(ordered.astype(">f4").tobytes())
    except OSError as exc:
        raise GridIOError(f"cannot write Storm file {path}: {exc}") from exc
    logger.info(f"Wrote Storm cube {path}")
    return path


def write_segy_file(path: str, grid: BaseGrid, simbox):
    """
    Write the logical box as SEG-Y, one trace per (i, j) column.
    """
    values = grid.to_array().astype(np.float32)
    nx, ny, nz = values.shape
    z0 = simbox.origin[2]
    dz = simbox.spacing[2]
    centers = simbox.cell_centers()

    spec = segyio.spec()
    spec.format = 5
    spec.sorting = 0
    spec.samples = z0 + dz * np.arange(nz)
    spec.tracecount = nx * ny

    try:
        with segyio.create(path, spec) as f:
            f.bin[segyio.BinField.Interval] = int(round(dz * 1000))
            trace = 0
            for j in range(ny):
                for i in range(nx):
                    f.trace[trace] = values[i, j, :]
                    f.header[trace] = {
                        segyio.TraceField.INLINE_3D: j + 1,
                        segyio.TraceField.CROSSLINE_3D: i + 1,
                        segyio.TraceField.CDP_X: int(round(centers[i, j, 0, 0])),
                        segyio.TraceField.CDP_Y: int(round(centers[i, j, 0, 1])),
                    }
                    trace += 1
    except OSError as exc:
        raise GridIOError(f"cannot write SEG-Y file {path}: {exc}") from exc
    logger.info(f"Wrote SEG-Y cube {path} ({nx * ny} traces)")
    return path


def save_grid(grid: BaseGrid, npy_path: str):
    """
    Save the logical box as an (nx, ny, nz) .npy array.
    """
    try:
        np.save(npy_path, grid.to_array())
    except OSError as exc:
        raise GridIOError(f"cannot write {npy_path}: {exc}") from exc
    return npy_path


def load_grid(npy_path: str, shape: Optional[GridShape] = None) -> FFTGrid:
    """
    Load an (nx, ny, nz) .npy array into a memory grid.
    """
    return FFTGrid.from_array(np.load(npy_path), shape)


def save_slice_png(grid: BaseGrid, png_path: str, k: int = 0, cmap: str = "viridis"):
    """
    Save the horizontal slice k as an image for quick QC.
    """
    values = grid.to_array()
    if not 0 <= k < values.shape[2]:
        raise ValueError("k is outside the logical box")
    plt.imsave(png_path, values[:, :, k].T, cmap=cmap, origin="lower")
    return png_path
